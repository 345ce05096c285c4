"""
Cohort lookups.

Cohort labels are owned by the external identity system, which keeps the
``user_cohorts`` table in sync. Tier matching only reads them.
"""
import logging
from typing import FrozenSet, Iterable

from ..extensions import db
from ..models.activity import UserCohort

logger = logging.getLogger(__name__)


def normalize_cohorts(cohorts: Iterable[str]) -> FrozenSet[str]:
    """Upper-case, strip and de-duplicate cohort labels."""
    return frozenset(c.strip().upper() for c in (cohorts or ()) if c and c.strip())


def get_user_cohorts(user_id: str) -> FrozenSet[str]:
    """Cohort labels currently held by ``user_id``."""
    rows = db.session.query(UserCohort.cohort).filter(UserCohort.user_id == user_id).all()
    return frozenset(cohort.upper() for (cohort,) in rows)


def set_user_cohorts(user_id: str, cohorts: Iterable[str]) -> FrozenSet[str]:
    """
    Replace the cohort labels of ``user_id``.

    Used by the identity sync (and tests); never by the lifecycle manager.
    """
    labels = normalize_cohorts(cohorts)
    try:
        UserCohort.query.filter_by(user_id=user_id).delete()
        for label in sorted(labels):
            db.session.add(UserCohort(user_id=user_id, cohort=label))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(f'Cohorts for {user_id} set to {sorted(labels)}')
    return labels
