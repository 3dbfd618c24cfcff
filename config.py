"""Application configuration module.

Settings are read from environment variables. A local ``.env`` file is loaded
first so development setups do not need to export anything by hand. Hosted
Postgres providers still hand out ``postgres://`` URLs, which SQLAlchemy no
longer accepts, so the prefix is normalised here.
"""

import os
from dotenv import load_dotenv


def _database_url() -> str:
    url = os.environ.get('DATABASE_URL', '')
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    return url or 'sqlite:///madrasa.db'


class Config:
    """Base configuration class.

    Flask, Flask-SQLAlchemy and the application services all read their
    settings from this class. Anything that differs per deployment comes from
    the environment.
    """

    load_dotenv()

    # Signs the session cookie that carries the authenticated account id.
    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-this-secret-in-prod')

    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}

    # Retry policy for the transactional boundary. Delays grow as
    # base, base*2, base*4 ...
    DB_RETRY_MAX_RETRIES = int(os.environ.get('DB_RETRY_MAX_RETRIES', '3'))
    DB_RETRY_BASE_DELAY = float(os.environ.get('DB_RETRY_BASE_DELAY', '1.0'))

    # Shared secret used to verify payment provider callbacks.
    PAYMENT_WEBHOOK_SECRET = os.environ.get('PAYMENT_WEBHOOK_SECRET', '')
    PAYMENT_WEBHOOK_TOLERANCE = int(os.environ.get('PAYMENT_WEBHOOK_TOLERANCE', '300'))

    # Public base URL used for checkout redirects.
    APP_URL = os.environ.get('APP_URL', 'http://localhost:8000').rstrip('/')
