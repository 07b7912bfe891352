from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./rental_booking.db"

    # Used to VERIFY actor tokens issued by the identity service
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"

    # Catalog/listing service used for product price and owner lookups
    CATALOG_SERVICE_URL: str = "http://catalog:8000"
    CATALOG_TIMEOUT_SECONDS: float = 5.0

    # Kafka settings for publishing domain events from the outbox
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_BOOKING_TOPIC: str = "booking_events"
    OUTBOX_POLL_INTERVAL_SECONDS: int = 5

    REDIS_URL: str = "redis://redis:6379/0"

    # Payment gateway (Midtrans). An empty server key selects the stub gateway.
    MIDTRANS_SERVER_KEY: str = ""
    MIDTRANS_IS_PRODUCTION: bool = False
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_FRONTEND_URL: str = "http://localhost:3000"

    # A payment attempt not resolved within this window is expired
    PAYMENT_EXPIRY_MINUTES: int = 15
    RECONCILE_INTERVAL_SECONDS: int = 60

    # Delivery pricing: fee per started distance unit
    DELIVERY_FEE_PER_UNIT: int = 5000
    DELIVERY_DISTANCE_UNIT_KM: float = 2.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
