"""
Unit tests for UndoService result and error handling.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from dedup.models.duplicate_set import EntityType
from dedup.services.consolidation.errors import UndoFailed
from dedup.services.consolidation.undo_service import UndoResult, UndoService


class TestUndoResult:
    def test_repr(self):
        restored_id = uuid.uuid4()
        result = UndoResult(
            merge_history_id=uuid.uuid4(),
            entity_type=EntityType.ORGANIZATION,
            restored_id=restored_id,
            survivor_id=uuid.uuid4(),
            relations_restored=2,
            relations_reinserted=1,
        )
        text = repr(result)
        assert str(restored_id) in text
        assert "relations=2+1" in text
        assert result.relations_missing == 0
        assert result.relations_moved == 0
        assert result.duplicate_set_id is None


class TestUndoErrorHandling:
    @pytest.mark.asyncio
    async def test_infrastructure_error_wrapped(self, reviewer_id):
        cause = TimeoutError("statement timeout")
        bus = MagicMock()
        bus.publish = AsyncMock()
        service = UndoService(MagicMock(side_effect=cause), event_bus=bus, isolation_level=None)

        with pytest.raises(UndoFailed) as exc_info:
            await service.undo(uuid.uuid4(), reviewer_id)

        assert exc_info.value.cause is cause
        bus.publish.assert_not_awaited()
