"""
Effective rate resolution.

Base pay and CPM are resolved INDEPENDENTLY, each by first-non-null-wins:

  creator value → niche value → company value → 0

A creator with cpm=None but base_pay=25 therefore gets base_pay from
itself and cpm from its niche (or company). Missing configuration is not
an error; it degrades to 0.

This is the only place the precedence chain is written down. Every caller
(live display, freeze, rate-change impact) goes through resolve_rates.
"""

import logging
from decimal import Decimal
from typing import Optional

from models.schemas import (
    ZERO,
    Company,
    Creator,
    Niche,
    RateChangeImpact,
    ResolvedRates,
    TierScope,
)
from services.errors import InvalidArgument

logger = logging.getLogger(__name__)

RATE_LEVELS = ("creator", "niche", "company")


def resolve_rate(*candidates: Optional[Decimal]) -> Decimal:
    """First non-null candidate, else 0."""
    value, _ = _first_non_null(candidates)
    return value


def resolve_rates(
    creator: Creator,
    niche: Optional[Niche],
    company: Optional[Company],
) -> ResolvedRates:
    """
    Resolve the effective base pay and CPM for a creator's videos.

    Args:
        creator: The video's creator (its own base_pay / cpm may be None)
        niche:   The creator's niche, or None if the creator has none
        company: The owning company, or None if unavailable

    Returns:
        ResolvedRates with both values and the level each came from.

    Raises:
        InvalidArgument: if any configured rate in the chain is negative
    """
    base_chain = (
        creator.base_pay,
        niche.base_pay if niche else None,
        company.base_pay if company else None,
    )
    cpm_chain = (
        creator.cpm,
        niche.cpm if niche else None,
        company.default_cpm if company else None,
    )

    for level, value in zip(RATE_LEVELS * 2, base_chain + cpm_chain):
        if value is not None and value < 0:
            raise InvalidArgument(f"Negative {level} rate configured: {value}")

    base_pay, base_source = _first_non_null(base_chain)
    cpm, cpm_source = _first_non_null(cpm_chain)

    return ResolvedRates(
        base_pay=base_pay,
        cpm=cpm,
        base_pay_source=base_source,
        cpm_source=cpm_source,
    )


def resolve_rates_for_creator(store, creator_id: str) -> ResolvedRates:
    """Load the creator → niche → company chain from the store and resolve it."""
    creator = store.get_creator(creator_id)
    niche = store.get_niche(creator.niche_id) if creator.niche_id else None
    company = store.get_company(creator.company_id)
    return resolve_rates(creator, niche, company)


def _first_non_null(chain) -> tuple[Decimal, str]:
    for level, value in zip(RATE_LEVELS, chain):
        if value is not None:
            return Decimal(str(value)), level
    return ZERO, "none"


# ===========================================================================
# Rate edits
# ===========================================================================

def update_rates(
    store,
    scope: TierScope,
    base_pay: Optional[Decimal],
    cpm: Optional[Decimal],
) -> RateChangeImpact:
    """
    Write new base_pay / cpm at one level of the chain.

    None clears the override at that level (so the next level down applies).
    Already-frozen payments are never touched; the returned impact counts
    paid videos whose live rates move with this edit, so an operator can be
    warned that their recorded totals will not follow the change.

    Raises:
        InvalidArgument: negative rate
        NotFound:        the scope's record does not exist
    """
    for name, value in (("base_pay", base_pay), ("cpm", cpm)):
        if value is not None and value < 0:
            raise InvalidArgument(f"{name} must be >= 0, got {value}")

    affected = count_paid_videos_affected(store, scope, base_pay, cpm)

    if scope.kind == "creator":
        store.update_creator(scope.id, {"base_pay": base_pay, "cpm": cpm})
    elif scope.kind == "niche":
        store.update_niche(scope.id, {"base_pay": base_pay, "cpm": cpm})
    else:
        store.update_company(scope.id, {"base_pay": base_pay, "default_cpm": cpm})

    if affected:
        logger.warning(
            f"Rates changed at {scope.kind} {scope.id} with {affected} paid videos "
            f"drawing on them; their frozen amounts are unchanged"
        )
    logger.info(f"Updated {scope.kind} {scope.id} rates: base_pay={base_pay}, cpm={cpm}")

    return RateChangeImpact(scope=scope, base_pay=base_pay, cpm=cpm, affected_paid_videos=affected)


def count_paid_videos_affected(
    store,
    scope: TierScope,
    base_pay: Optional[Decimal],
    cpm: Optional[Decimal],
) -> int:
    """
    Count paid videos whose live rates would change under a rate edit.

    Those videos keep their frozen amounts; after the edit their live
    base+CPM figure no longer matches what was recorded as paid.
    """
    if scope.kind == "creator":
        creators = [store.get_creator(scope.id)]
    elif scope.kind == "niche":
        store.get_niche(scope.id)
        creators = store.list_creators(niche_id=scope.id)
    else:
        store.get_company(scope.id)
        creators = store.list_creators(company_id=scope.id)

    affected = 0
    for creator in creators:
        paid_count = sum(1 for v in store.list_videos(creator_id=creator.id) if v.base_cpm_paid)
        if not paid_count:
            continue

        niche = store.get_niche(creator.niche_id) if creator.niche_id else None
        company = store.get_company(creator.company_id)
        before = resolve_rates(creator, niche, company)

        if scope.kind == "creator":
            creator = creator.model_copy(update={"base_pay": base_pay, "cpm": cpm})
        elif scope.kind == "niche" and niche is not None:
            niche = niche.model_copy(update={"base_pay": base_pay, "cpm": cpm})
        elif scope.kind == "company":
            company = company.model_copy(update={"base_pay": base_pay, "default_cpm": cpm})
        after = resolve_rates(creator, niche, company)

        if (before.base_pay, before.cpm) != (after.base_pay, after.cpm):
            affected += paid_count

    return affected
