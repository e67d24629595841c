import pytest

from chambers import create_app, db, mail
from chambers.auth import issue_token
from chambers.models import Client, ClientFinder, Project, User
from chambers.utils.request_context import context_for_user


@pytest.fixture
def app():
    app = create_app('chambers.config.TestConfig')
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def outbox(app):
    with mail.record_messages() as messages:
        yield messages


def make_user(role, email, name=None, **capabilities):
    user = User(email=email, name=name or email.split('@')[0].title(), role=role, **capabilities)
    user.set_password('password123')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def users(app):
    return {
        'admin': make_user('ADMIN', 'admin@firm.test', 'Ada Admin'),
        'admin2': make_user('ADMIN', 'second.admin@firm.test', 'Bo Admin'),
        'manager': make_user('MANAGER', 'manager@firm.test', 'Mia Manager'),
        'staff': make_user('STAFF', 'staff@firm.test', 'Sam Staff'),
        'staff2': make_user('STAFF', 'staff2@firm.test', 'Tess Staff'),
        'client': make_user('CLIENT', 'buyer@acme.test', 'Acme Buyer'),
    }


@pytest.fixture
def third_admin(users):
    return make_user('ADMIN', 'third.admin@firm.test', 'Cy Admin')


@pytest.fixture
def ctx(users):
    """role name -> RequestContext"""
    return {name: context_for_user(user) for name, user in users.items()}


@pytest.fixture
def headers(users):
    def _headers(name):
        return {'Authorization': f"Bearer {issue_token(users[name])}"}
    return _headers


@pytest.fixture
def acme(users):
    client = Client(
        name='Acme Ltd',
        email='buyer@acme.test',
        company='Acme',
        created_by=users['staff'].id,
        client_manager_id=users['manager'].id,
    )
    db.session.add(client)
    db.session.flush()
    db.session.add(ClientFinder(client_id=client.id, user_id=users['staff2'].id, finder_fee_percent=10))
    db.session.commit()
    return client


@pytest.fixture
def project(users, acme):
    project = Project(name='Acme litigation', client_id=acme.id, status='ACTIVE', currency='EUR')
    db.session.add(project)
    db.session.commit()
    return project
