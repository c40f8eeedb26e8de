"""
Shared fixtures.

API tests talk to the app through the test client only; service tests run
inside the `app_context` fixture with explicit RequestContext values. The
two are kept apart because Flask-Login caches the current user on the app
context.
"""

from types import SimpleNamespace

import pytest

from config import TestingConfig
from app import create_app
from app.auth import RequestContext, create_access_token
from models import db, Family, FamilyMember, ROLE_PERMISSIONS


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def app_context(app):
    with app.app_context():
        yield
        db.session.remove()


def _seed_family(name, prefix):
    family = Family(name=name)
    db.session.add(family)
    db.session.flush()
    members = {}
    for role in ('admin', 'editor', 'viewer'):
        member = FamilyMember(
            family_id=family.id,
            email=f'{prefix}-{role}@example.com',
            display_name=f'{name} {role}',
            role=role,
        )
        db.session.add(member)
        members[role] = member
    db.session.commit()
    return SimpleNamespace(
        id=family.id,
        admin_id=members['admin'].id,
        editor_id=members['editor'].id,
        viewer_id=members['viewer'].id,
    )


@pytest.fixture
def family(app):
    """The Rivera family with one admin, one editor and one viewer"""
    with app.app_context():
        return _seed_family('Rivera', 'rivera')


@pytest.fixture
def other_family(app):
    with app.app_context():
        return _seed_family('Okafor', 'okafor')


def _headers_for(app, member_id, **kwargs):
    with app.app_context():
        member = db.session.get(FamilyMember, member_id)
        token = create_access_token(member, **kwargs)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def admin_headers(app, family):
    return _headers_for(app, family.admin_id)


@pytest.fixture
def editor_headers(app, family):
    return _headers_for(app, family.editor_id)


@pytest.fixture
def viewer_headers(app, family):
    return _headers_for(app, family.viewer_id)


@pytest.fixture
def other_headers(app, other_family):
    return _headers_for(app, other_family.admin_id)


@pytest.fixture
def make_headers(app):
    """Build headers for any member id, e.g. with an expired token"""
    def _make(member_id, **kwargs):
        return _headers_for(app, member_id, **kwargs)
    return _make


def _ctx(family_id, member_id, role):
    return RequestContext(family_id, member_id, role, ROLE_PERMISSIONS[role])


@pytest.fixture
def admin_ctx(family):
    return _ctx(family.id, family.admin_id, 'admin')


@pytest.fixture
def editor_ctx(family):
    return _ctx(family.id, family.editor_id, 'editor')


@pytest.fixture
def viewer_ctx(family):
    return _ctx(family.id, family.viewer_id, 'viewer')


@pytest.fixture
def other_ctx(other_family):
    return _ctx(other_family.id, other_family.admin_id, 'admin')
