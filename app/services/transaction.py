# app/services/transaction.py - Commit and row-locking helpers for balance writes

from sqlalchemy.orm.exc import StaleDataError
from models import db, IncomeEvent, Payment
from app.errors import ConflictError, NotFoundError
import logging

logger = logging.getLogger(__name__)


def commit_or_conflict(tag):
    """
    Commit the session.

    A stale version counter means another request changed the same income
    event first; that is rolled back and reported as a 409 so the client
    can retry.
    """
    try:
        db.session.commit()
    except StaleDataError as e:
        db.session.rollback()
        logger.warning(f"[{tag}] Concurrent modification detected: {e}")
        raise ConflictError(
            'The record was changed by another request, please retry',
            code='CONCURRENT_MODIFICATION'
        )
    except Exception:
        db.session.rollback()
        raise


def lock_income_event(ctx, income_event_id):
    """Load an income event of the caller's family with SELECT ... FOR UPDATE"""
    event = IncomeEvent.query.filter_by(
        id=income_event_id,
        family_id=ctx.family_id
    ).with_for_update().populate_existing().first()
    if not event:
        raise NotFoundError(f'Income event {income_event_id} not found')
    return event


def lock_payment(ctx, payment_id):
    """
    Load a payment of the caller's family with SELECT ... FOR UPDATE.

    Attributions are expired so the over-attribution check reads rows
    committed before the lock was granted. Paths that lock both rows take
    the payment first.
    """
    payment = Payment.query.filter_by(
        id=payment_id,
        family_id=ctx.family_id
    ).with_for_update().populate_existing().first()
    if not payment:
        raise NotFoundError(f'Payment {payment_id} not found')
    db.session.expire(payment, ['attributions'])
    return payment
