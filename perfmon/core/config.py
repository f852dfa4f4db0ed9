import os


class Settings:
    # Monitoring store (any SQLAlchemy URL)
    DATABASE_URL: str = os.environ.get('DATABASE_URL', 'sqlite:///perfmon.db')
    LOCK_TIMEOUT_MS: int = int(os.environ.get('LOCK_TIMEOUT_MS', 30000))
    TICK_SECONDS: int = int(os.environ.get('TICK_SECONDS', 60))

    # Monitored SQL Server
    SQLSERVER_DRIVER: str = os.environ.get('SQLSERVER_DRIVER', '{ODBC Driver 18 for SQL Server}')
    SQLSERVER_SERVER: str = os.environ.get('SQLSERVER_SERVER', 'localhost')
    SQLSERVER_DATABASE: str = os.environ.get('SQLSERVER_DATABASE', 'master')
    SQLSERVER_USERNAME: str = os.environ.get('SQLSERVER_USERNAME', '')
    SQLSERVER_PASSWORD: str = os.environ.get('SQLSERVER_PASSWORD', '')
    SQLSERVER_ENCRYPT: str = os.environ.get('SQLSERVER_ENCRYPT', 'yes')
    SQLSERVER_TRUST_SERVER_CERTIFICATE: str = os.environ.get('SQLSERVER_TRUST_SERVER_CERTIFICATE', 'yes')
    SQLSERVER_LOGIN_TIMEOUT: int = int(os.environ.get('SQLSERVER_LOGIN_TIMEOUT', 10))
    SQLSERVER_QUERY_TIMEOUT: int = int(os.environ.get('SQLSERVER_QUERY_TIMEOUT', 120))

    # Retention
    DEFAULT_RETENTION_DAYS: int = int(os.environ.get('DEFAULT_RETENTION_DAYS', 30))
    RETENTION_BATCH_SIZE: int = int(os.environ.get('RETENTION_BATCH_SIZE', 10000))
    RETENTION_INTERVAL_HOURS: int = int(os.environ.get('RETENTION_INTERVAL_HOURS', 24))

    # Collection health
    HEALTH_WINDOW_DAYS: int = int(os.environ.get('HEALTH_WINDOW_DAYS', 7))
    HEALTH_STALE_HOURS: int = int(os.environ.get('HEALTH_STALE_HOURS', 24))

    # Telegram alerts
    TELEGRAM_ENABLED: bool = os.environ.get('TELEGRAM_ENABLED', 'false').lower() == 'true'
    TELEGRAM_BOT_TOKEN: str = os.environ.get('TELEGRAM_BOT_TOKEN', '')
    TELEGRAM_CHAT_ID: str = os.environ.get('TELEGRAM_CHAT_ID', '')

    # Email alerts
    EMAIL_ENABLED: bool = os.environ.get('EMAIL_ENABLED', 'false').lower() == 'true'
    # List of recipients, comma separated
    EMAIL_RECIPIENTS: list = [x.strip() for x in os.environ.get('EMAIL_RECIPIENTS', '').split(',') if x.strip()]

    SMTP_FROM: str = os.environ.get('SMTP_FROM', 'perfmon@domain.com')
    _smarthost = os.environ.get('SMTP_SMARTHOST', 'smtp.gmail.com:587')
    if ':' in _smarthost:
        SMTP_SERVER, SMTP_PORT = _smarthost.split(':')
        SMTP_PORT = int(SMTP_PORT)
    else:
        SMTP_SERVER = _smarthost
        SMTP_PORT = 587

    SMTP_AUTH_USERNAME: str = os.environ.get('SMTP_AUTH_USERNAME', '')
    SMTP_AUTH_PASSWORD: str = os.environ.get('SMTP_AUTH_PASSWORD', '')


settings = Settings()
