import pytest

from app import create_app
from config import TestingConfig, detect_environment, normalize_database_url


@pytest.mark.parametrize('argv, environ, expected', [
    (['run.py'], {}, 'development'),
    (['run.py', '--prod'], {}, 'production'),
    (['run.py', '--dev'], {'ENVIRONMENT': 'production'}, 'development'),
    (['run.py'], {'ENVIRONMENT': 'production'}, 'production'),
    (['run.py'], {'ENVIRONMENT': 'staging'}, 'development'),
    (['run.py', '--dev'], {'RENDER': 'true'}, 'production'),
])
def test_detect_environment(argv, environ, expected):
    assert detect_environment(argv, environ) == expected


def test_postgres_url_uses_psycopg_driver():
    url = normalize_database_url('postgres://u:p@host/db')
    assert url == 'postgresql+psycopg://u:p@host/db'


def test_production_url_requires_ssl():
    assert normalize_database_url('postgresql://h/db', require_ssl=True).endswith('?sslmode=require')
    assert normalize_database_url('postgresql://h/db?a=1', require_ssl=True).endswith('&sslmode=require')
    assert normalize_database_url('postgresql://h/db?sslmode=disable', require_ssl=True).count('sslmode') == 1


class _ProductionConfig(TestingConfig):
    TESTING = False
    IS_DEVELOPMENT = False
    CURRENT_ENV = 'production'


@pytest.mark.parametrize('key', [None, 'too-short'])
def test_production_refuses_weak_signing_key(key):
    config = type('WeakKeyConfig', (_ProductionConfig,), {'JWT_SECRET_KEY': key})
    with pytest.raises(RuntimeError):
        create_app(config)


def test_production_accepts_long_signing_key():
    app = create_app(_ProductionConfig)
    assert app.config['JWT_SECRET_KEY'] == TestingConfig.JWT_SECRET_KEY


def test_development_only_warns_about_short_key():
    config = type('DevConfig', (_ProductionConfig,), {'IS_DEVELOPMENT': True, 'JWT_SECRET_KEY': 'short'})
    assert create_app(config).config['JWT_SECRET_KEY'] == 'short'
