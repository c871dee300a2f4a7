"""
Rating aggregate recalculation.

Ratings on contacts and organizations are derived from reviews, so after
relation rows move between records the survivor's aggregates are
recomputed inside the same transaction.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dedup.models.contact import Contact
from dedup.models.individual_review import IndividualReview
from dedup.models.organization import Organization

logger = logging.getLogger(__name__)


async def recalculate_contact_rating(session: AsyncSession, contact: Contact) -> None:
    """Mean of review ratings (unrated reviews count as 0) plus review count."""
    result = await session.execute(
        select(IndividualReview.avg_rating).where(
            IndividualReview.contact_id == contact.id
        )
    )
    ratings = list(result.scalars().all())

    contact.review_count = len(ratings)
    contact.average_rating = (
        sum(r or 0 for r in ratings) / len(ratings) if ratings else None
    )
    logger.debug(
        f"Recalculated contact {contact.id} rating: "
        f"{contact.average_rating} over {contact.review_count} reviews"
    )


async def recalculate_organization_rating(
    session: AsyncSession, organization: Organization
) -> None:
    """Review-count weighted mean of member contact ratings."""
    result = await session.execute(
        select(Contact.average_rating, Contact.review_count).where(
            Contact.organization_id == organization.id,
            Contact.review_count > 0,
        )
    )
    rows = result.all()

    weighted_sum = 0.0
    total_weight = 0
    for average_rating, review_count in rows:
        if average_rating is not None:
            weighted_sum += average_rating * review_count
            total_weight += review_count

    organization.average_rating = weighted_sum / total_weight if total_weight else None
    organization.review_count = sum(review_count for _, review_count in rows)
    logger.debug(
        f"Recalculated organization {organization.id} rating: "
        f"{organization.average_rating} over {organization.review_count} reviews"
    )
