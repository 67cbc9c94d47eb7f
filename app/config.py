"""
Configuration management for SipGrounds.
"""
import os
from dotenv import load_dotenv

load_dotenv()


class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Frontend origin for CORS and Stripe Checkout redirects
    FRONTEND_URL = os.getenv('FRONTEND_URL', 'http://localhost:3000')

    # Payments
    CURRENCY = os.getenv('CURRENCY', 'usd')
    PAYMENT_GATEWAY = os.getenv('PAYMENT_GATEWAY', 'stripe')  # stripe | simulated
    PAYMENT_GATEWAY_TIMEOUT = int(os.getenv('PAYMENT_GATEWAY_TIMEOUT', '10'))  # seconds
    STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY', '')
    STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET', '')
    SIMULATED_WEBHOOK_SECRET = os.getenv('SIMULATED_WEBHOOK_SECRET', 'whsec_simulated')

    # Loyalty defaults
    REWARD_EXPIRY_DAYS = 30
    COUPON_DEFAULT_VALID_DAYS = 30


class DevelopmentConfig(BaseConfig):
    """Development configuration."""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///sipgrounds_dev.db'  # SQLite fallback for local dev
    )
    # No Stripe key locally means the simulated processor
    PAYMENT_GATEWAY = os.getenv(
        'PAYMENT_GATEWAY',
        'stripe' if os.getenv('STRIPE_SECRET_KEY') else 'simulated'
    )


class ProductionConfig(BaseConfig):
    """Production configuration."""
    DEBUG = False

    _db_url = os.getenv('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # SQLAlchemy requires postgresql:// not postgres://
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = _db_url

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 5,
        'pool_recycle': 300,
        'pool_pre_ping': True,
    }

    _secret_key = os.getenv('SECRET_KEY', '')

    @classmethod
    def validate_secret_key(cls) -> str:
        """
        Validate SECRET_KEY in production environment.

        Raises:
            RuntimeError: If SECRET_KEY is missing, too short or an obvious placeholder
        """
        if not cls._secret_key:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable is not set!\n"
                "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )

        lower_key = cls._secret_key.lower()
        for pattern in ('dev', 'change', 'default', 'test', 'password'):
            if pattern in lower_key:
                raise RuntimeError(
                    f"CRITICAL: SECRET_KEY contains '{pattern}' which suggests it's not secure!"
                )

        if len(cls._secret_key) < 32:
            raise RuntimeError("CRITICAL: SECRET_KEY is too short (minimum 32 characters required)!")

        return cls._secret_key

    @classmethod
    def validate_payments(cls) -> None:
        """Stripe must be fully configured before taking real orders."""
        if cls.PAYMENT_GATEWAY != 'stripe':
            raise RuntimeError("CRITICAL: PAYMENT_GATEWAY must be 'stripe' in production!")
        if not cls.STRIPE_SECRET_KEY or not cls.STRIPE_WEBHOOK_SECRET:
            raise RuntimeError(
                "CRITICAL: STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET must be set in production!"
            )

    SECRET_KEY = _secret_key  # Validated at app startup


class TestingConfig(BaseConfig):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    PAYMENT_GATEWAY = 'simulated'
    SIMULATED_WEBHOOK_SECRET = 'whsec_test'


config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}


def get_config(config_name: str = 'development'):
    """Get configuration class by name."""
    return config_map.get(config_name, DevelopmentConfig)


def validate_config(config_name: str = 'development') -> None:
    """
    Validate configuration before app startup.

    Args:
        config_name: The configuration environment name

    Raises:
        RuntimeError: If validation fails in production
    """
    if config_name == 'production':
        ProductionConfig.validate_secret_key()
        ProductionConfig.validate_payments()
