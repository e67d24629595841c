from flask import Flask
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_jwt_extended import JWTManager
from flask_migrate import Migrate
from flask_mail import Mail

from sqlalchemy import event

import logging

db = SQLAlchemy()
bcrypt = Bcrypt()
jwt = JWTManager()
migrate = Migrate()
mail = Mail()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_app(config_object='chambers.config.Config'):
    app = Flask(__name__)
    CORS(app)

    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    db.init_app(app)
    bcrypt.init_app(app)
    jwt.init_app(app)
    migrate.init_app(app, db)
    mail.init_app(app)

    with app.app_context():
        from .routes import main
        from .auth import auth
        from .errors import register_error_handlers
        from . import models
        app.register_blueprint(main, url_prefix='/api')
        app.register_blueprint(auth, url_prefix='/auth')
        register_error_handlers(app)
        if db.engine.dialect.name == 'sqlite':
            event.listen(db.engine, 'connect', _enable_sqlite_foreign_keys)
        if app.config.get('AUTO_CREATE_TABLES'):
            db.create_all()

    return app
