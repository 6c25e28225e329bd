import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=False)

# Application environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
DEBUG = ENVIRONMENT == "development"

# Database settings
DATABASE_URL = os.getenv("DATABASE_URL")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Application settings
APP_NAME = "Heartsync API"
APP_VERSION = "1.0.0"

# Hosted auth (HS256 access tokens issued by the identity provider)
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")
AUTH_JWT_ALGORITHM = os.getenv("AUTH_JWT_ALGORITHM", "HS256")
AUTH_JWT_LEEWAY = int(os.getenv("AUTH_JWT_LEEWAY", "60"))  # seconds of clock-skew tolerance

# Redis settings
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
RATE_LIMIT_USE_REDIS = os.getenv("RATE_LIMIT_USE_REDIS", "true").lower() == "true"

# Change feed: "memory" (single process) or "redis" (pub/sub across workers)
CHANGE_FEED_BACKEND = os.getenv("CHANGE_FEED_BACKEND", "memory").lower()
CHANGE_FEED_CHANNEL_PREFIX = os.getenv("CHANGE_FEED_CHANNEL_PREFIX", "changes")
CHANGE_FEED_READY_TIMEOUT = float(os.getenv("CHANGE_FEED_READY_TIMEOUT", "5"))

# Stripe settings
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")
STRIPE_MONTHLY_AMOUNT_MINOR = int(os.getenv("STRIPE_MONTHLY_AMOUNT_MINOR", "999"))
STRIPE_YEARLY_AMOUNT_MINOR = int(os.getenv("STRIPE_YEARLY_AMOUNT_MINOR", "9900"))
STRIPE_PRODUCT_NAME = os.getenv("STRIPE_PRODUCT_NAME", "Premium Membership")
CHECKOUT_SUCCESS_URL = os.getenv("CHECKOUT_SUCCESS_URL", "http://localhost:3000/?checkout=success")
CHECKOUT_CANCEL_URL = os.getenv("CHECKOUT_CANCEL_URL", "http://localhost:3000/?checkout=canceled")
BILLING_PORTAL_RETURN_URL = os.getenv("BILLING_PORTAL_RETURN_URL", "http://localhost:3000/")

# Entitlement cache
ENTITLEMENT_CACHE_SECONDS = int(os.getenv("ENTITLEMENT_CACHE_SECONDS", "300"))

# Discovery settings
DISCOVERY_PAGE_SIZE = int(os.getenv("DISCOVERY_PAGE_SIZE", "20"))
# What a viewer with no declared gender sees: everyone | nobody | unset_only | with_gender
DISCOVERY_UNSET_GENDER_POLICY = os.getenv("DISCOVERY_UNSET_GENDER_POLICY", "everyone").lower()

# Messaging settings
MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", "2000"))
MESSAGE_MAX_PER_MINUTE = int(os.getenv("MESSAGE_MAX_PER_MINUTE", "30"))
MESSAGE_SANITIZE_ENABLED = os.getenv("MESSAGE_SANITIZE_ENABLED", "true").lower() == "true"
LEGACY_MESSAGES_ENABLED = os.getenv("LEGACY_MESSAGES_ENABLED", "false").lower() == "true"
STREAM_CHAT_HISTORY_LIMIT = int(os.getenv("STREAM_CHAT_HISTORY_LIMIT", "50"))
VIEWER_LEAVE_ATTEMPTS = int(os.getenv("VIEWER_LEAVE_ATTEMPTS", "3"))
VIEWER_LEAVE_BACKOFF_SECONDS = float(os.getenv("VIEWER_LEAVE_BACKOFF_SECONDS", "0.5"))

# SSE settings
SSE_HEARTBEAT_SECONDS = int(os.getenv("SSE_HEARTBEAT_SECONDS", "25"))

# AWS avatar upload settings
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
AWS_AVATAR_BUCKET = os.getenv("AWS_AVATAR_BUCKET", "heartsync-avatars")
AWS_AVATAR_PUBLIC_BASE_URL = os.getenv("AWS_AVATAR_PUBLIC_BASE_URL", "")
AVATAR_MAX_BYTES = int(os.getenv("AVATAR_MAX_BYTES", str(5 * 1024 * 1024)))
AVATAR_ALLOWED_CONTENT_TYPES = [
    ct.strip()
    for ct in os.getenv("AVATAR_ALLOWED_CONTENT_TYPES", "image/jpeg,image/png,image/webp").split(",")
    if ct.strip()
]

# CORS
CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",")
    if origin.strip()
]
