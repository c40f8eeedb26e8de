# app/services/audit_service.py - Change history for family data

from models import db, AuditLog
import json
import logging

logger = logging.getLogger(__name__)


class AuditService:

    @staticmethod
    def record(ctx, action, entity_type, entity_id, old_values=None, new_values=None):
        """
        Add an audit row to the current session.

        The caller commits, so the entry lands in the same transaction as
        the change it describes.
        """
        entry = AuditLog(
            family_id=ctx.family_id,
            family_member_id=ctx.user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            old_values=json.dumps(old_values, default=str) if old_values is not None else None,
            new_values=json.dumps(new_values, default=str) if new_values is not None else None,
        )
        db.session.add(entry)
        logger.debug(f"[AUDIT] {action} {entity_type}#{entity_id} by member {ctx.user_id}")
        return entry

    @staticmethod
    def history(ctx, entity_type, entity_id):
        return AuditLog.query.filter_by(
            family_id=ctx.family_id,
            entity_type=entity_type,
            entity_id=str(entity_id)
        ).order_by(AuditLog.created_at, AuditLog.id).all()
