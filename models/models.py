# models/models.py - Core db instance, families and members

from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
import enum
import json

db = SQLAlchemy()


class Role(str, enum.Enum):
    ADMIN = 'admin'
    EDITOR = 'editor'
    VIEWER = 'viewer'


class Frequency(str, enum.Enum):
    """Recurrence rule shared by income events and payments"""
    ONCE = 'once'
    WEEKLY = 'weekly'
    BIWEEKLY = 'biweekly'
    MONTHLY = 'monthly'
    QUARTERLY = 'quarterly'
    ANNUAL = 'annual'


PERMISSION_FLAGS = (
    'can_manage_bank_accounts',
    'can_edit_payments',
    'can_manage_budget',
    'can_view_reports',
)

# Defaults per role; per-member overrides are layered on top
ROLE_PERMISSIONS = {
    Role.ADMIN.value: {
        'can_manage_bank_accounts': True,
        'can_edit_payments': True,
        'can_manage_budget': True,
        'can_view_reports': True,
    },
    Role.EDITOR.value: {
        'can_manage_bank_accounts': False,
        'can_edit_payments': True,
        'can_manage_budget': True,
        'can_view_reports': True,
    },
    Role.VIEWER.value: {
        'can_manage_bank_accounts': False,
        'can_edit_payments': False,
        'can_manage_budget': False,
        'can_view_reports': True,
    },
}


class Family(db.Model):
    """Tenant boundary - every budget row belongs to exactly one family"""
    __tablename__ = "family"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    members = db.relationship("FamilyMember", back_populates="family", cascade="all, delete-orphan")

    def __repr__(self):
        return f'<Family {self.name}>'


class FamilyMember(db.Model):
    __tablename__ = "family_member"

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey("family.id"), nullable=False, index=True)
    family = db.relationship("Family", back_populates="members")

    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(100), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=Role.VIEWER.value)

    # JSON object of permission overrides, e.g. {"can_edit_payments": false}
    permissions = db.Column(db.Text, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def get_permissions(self):
        """Role defaults merged with any stored overrides"""
        merged = dict(ROLE_PERMISSIONS.get(self.role, ROLE_PERMISSIONS[Role.VIEWER.value]))
        if self.permissions:
            try:
                overrides = json.loads(self.permissions)
            except (json.JSONDecodeError, TypeError):
                overrides = {}
            for flag in PERMISSION_FLAGS:
                if flag in overrides:
                    merged[flag] = bool(overrides[flag])
        return merged

    def set_permissions(self, overrides):
        if overrides:
            self.permissions = json.dumps({k: bool(v) for k, v in overrides.items() if k in PERMISSION_FLAGS})
        else:
            self.permissions = None

    def __repr__(self):
        return f'<FamilyMember {self.email} ({self.role})>'


class AuditLog(db.Model):
    """Who changed what - written in the same transaction as the change"""
    __tablename__ = "audit_log"

    id = db.Column(db.Integer, primary_key=True)
    family_id = db.Column(db.Integer, db.ForeignKey("family.id"), nullable=False, index=True)
    family_member_id = db.Column(db.Integer, db.ForeignKey("family_member.id"), nullable=True)
    action = db.Column(db.String(20), nullable=False)  # 'create', 'update', 'delete'
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(50), nullable=False)
    old_values = db.Column(db.Text, nullable=True)
    new_values = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def get_old_values(self):
        return json.loads(self.old_values) if self.old_values else {}

    def get_new_values(self):
        return json.loads(self.new_values) if self.new_values else {}

    def __repr__(self):
        return f'<AuditLog {self.action} {self.entity_type}#{self.entity_id}>'
