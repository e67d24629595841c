import os
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///chambers.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    AUTO_CREATE_TABLES = os.getenv("AUTO_CREATE_TABLES", "false").lower() == "true"

    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", SECRET_KEY)
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=24)

    # Shared secret for the cron endpoints
    CRON_SECRET = os.getenv("CRON_SECRET")

    # Base URL used in links sent to clients and staff
    APP_URL = os.getenv("APP_URL", "http://localhost:3000")

    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = os.getenv("MAIL_USE_TLS", "true").lower() == "true"
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "noreply@chambers.local")

    FIRM_TIMEZONE = os.getenv("FIRM_TIMEZONE", "Europe/Lisbon")
    CLIENT_APPROVAL_TOKEN_DAYS = 30
    REMINDER_INTERVAL_DAYS = 7
    INSTALLMENT_NOTICE_DAYS = 7

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    JWT_SECRET_KEY = "test-jwt-secret-with-enough-length-for-hs256"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    AUTO_CREATE_TABLES = True
    CRON_SECRET = "test-cron-secret"
    MAIL_SUPPRESS_SEND = True
    BCRYPT_LOG_ROUNDS = 4
    FIRM_TIMEZONE = "UTC"
