import os


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Settings loaded into app.config"""
    SECRET_KEY = os.environ.get('PARKING_SECRET_KEY', 'smart-parking-secret-key')
    DATABASE = os.environ.get('PARKING_DB_PATH', 'parking_booking.db')
    SEED_DEMO_DATA = _env_flag('PARKING_SEED_DEMO_DATA', True)
    LOG_LEVEL = os.environ.get('PARKING_LOG_LEVEL', 'INFO')
    TESTING = False


class TestingConfig(Config):
    DATABASE = ':memory:'
    SEED_DEMO_DATA = False
    LOG_LEVEL = 'WARNING'
    TESTING = True
