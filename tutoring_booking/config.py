from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'Tutoring Booking'
    app_env: str = 'local'
    app_timezone: str = 'Asia/Kolkata'
    database_url: str = 'sqlite:///./tutoring_booking.db'
    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200

    # Booking rule defaults, used until a system_configs row exists.
    default_max_bookings_per_month: int = 4
    default_cancellation_hours: int = 24
    default_allow_cross_branch_booking: bool = True
    priority_grant_days: int = 7
    monthly_bypass_days: int = 30
    waitlist_expiry_hours: int = 24
    slot_lock_timeout_seconds: float = 10.0

    notifier_mode: str = 'log'
    notifier_base_url: str = 'http://127.0.0.1:8100'
    notifier_timeout_seconds: float = 5.0
    outbox_batch_size: int = 50
    outbox_max_attempts: int = 5
    outbox_claim_lease_seconds: int = 300
    outbox_dispatch_interval_seconds: int = 30
    expiry_sweep_interval_minutes: int = 15
    enable_scheduler: bool = True

    rate_limit_store: str = 'memory'
    rate_limit_window_seconds: int = 60
    rate_limit_booking_max_requests: int = 20


settings = Settings()
