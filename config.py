import os
import logging

from dotenv import load_dotenv

load_dotenv()

# ==============================================================================
# CONFIGURATION
# ==============================================================================
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
IS_PRODUCTION = ENVIRONMENT == "production"

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "devconnect")

ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]
REALTIME_PATH = os.getenv("REALTIME_PATH", "/ws/realtime")
SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", str(60 * 24)))
AUTH_GATEWAY_SECRET = os.getenv("AUTH_GATEWAY_SECRET")

WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID")
WHATSAPP_OTP_TEMPLATE_NAME = os.getenv("WHATSAPP_OTP_TEMPLATE_NAME")
WHATSAPP_OTP_TEMPLATE_LANGUAGE = os.getenv("WHATSAPP_OTP_TEMPLATE_LANGUAGE", "en")
GRAPH_API_BASE_URL = "https://graph.facebook.com/v18.0"

OTP_TTL_MINUTES = 5
OTP_MAX_ATTEMPTS = 5
OTP_MAX_SENDS = 5
OTP_RATE_WINDOW_MINUTES = 15

MESSAGE_PAGE_LIMIT = 100
NOTIFICATION_PAGE_LIMIT = 50
NOTIFICATION_BATCH_HOURS = 24

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
