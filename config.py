"""Configuration module for Flask application."""
import os
from dotenv import load_dotenv
from sqlalchemy.pool import StaticPool

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')
    TESTING = False

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

    # Database - a single workstation keeps its records in a local SQLite file
    # unless DATABASE_URL points somewhere else.
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///clinic.db')

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', '0') == '1'
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # CSRF (JSON clients send the token in X-CSRFToken)
    WTF_CSRF_ENABLED = os.getenv('WTF_CSRF_ENABLED', 'true').lower() == 'true'

    # Ledger defaults
    DEFAULT_REASON_TYPE = os.getenv('DEFAULT_REASON_TYPE', 'Control')
    QUICK_PAYMENT_REASON = os.getenv('QUICK_PAYMENT_REASON', 'Abono a cuenta')
    QUICK_PAYMENT_DETAIL = os.getenv('QUICK_PAYMENT_DETAIL', 'Abono rápido a cuenta')
    CURRENCY_SYMBOL = os.getenv('CURRENCY_SYMBOL', '$')


class TestingConfig(Config):
    """Configuration used by the test suite (in-memory SQLite)."""

    TESTING = True
    DEBUG = False
    WTF_CSRF_ENABLED = False
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ECHO = False
    # One shared connection so every scoped session sees the same memory DB
    SQLALCHEMY_ENGINE_OPTIONS = {
        'poolclass': StaticPool,
        'connect_args': {'check_same_thread': False},
    }
