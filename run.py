import os
import sys

from config import Config, detect_environment
from app import create_app
from models import db

PORTS = {'development': 5001, 'production': 5000}

app = create_app()


def resolve_port(current_env):
    # Render assigns the port
    if os.environ.get('RENDER'):
        return int(os.environ.get('PORT', 10000))
    return PORTS[current_env]


def issue_token(email):
    """Print a bearer token for an existing member (local tooling only)"""
    from app.auth import create_access_token
    from models import FamilyMember

    member = FamilyMember.query.filter_by(email=email, is_active=True).first()
    if not member:
        print(f"No active family member with email {email}")
        return 1
    print(create_access_token(member))
    return 0


def prepare_database():
    db_info = Config.get_db_info()
    # Show only the database name, never credentials
    db_name = db_info['database_uri'].rsplit('/', 1)[-1].split('?')[0]
    print(f"Database: {db_info['current_env']} -> {db_name}")

    try:
        db.create_all()
        print("Database tables created/verified")
    except Exception as e:
        print(f"Database error: {e}")


if __name__ == "__main__":
    current_env = detect_environment()
    port = resolve_port(current_env)
    print(f"{current_env.upper()} mode")

    if '--issue-token' in sys.argv:
        index = sys.argv.index('--issue-token')
        if index + 1 >= len(sys.argv):
            print("Usage: python run.py --issue-token <email>")
            sys.exit(2)
        with app.app_context():
            sys.exit(issue_token(sys.argv[index + 1]))

    with app.app_context():
        prepare_database()
        print(f"Ready on port {port}")

    if Config.IS_DEVELOPMENT:
        app.run(debug=True, port=port, use_reloader=False)
    else:
        # Gunicorn serves production; this path is a local fallback
        app.run(host='0.0.0.0', port=port, debug=False)
