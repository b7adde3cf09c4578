import logging
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "angel_baby_dresses")

# JWT Config
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 30))  # 30 days
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 10))
RESET_TOKEN_EXPIRE_MINUTES = 30

CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# JazzCash
JAZZCASH_MERCHANT_ID = os.getenv("JAZZCASH_MERCHANT_ID", "")
JAZZCASH_PASSWORD = os.getenv("JAZZCASH_PASSWORD", "")
JAZZCASH_INTEGRITY_SALT = os.getenv("JAZZCASH_INTEGRITY_SALT", "")
JAZZCASH_RETURN_URL = os.getenv("JAZZCASH_RETURN_URL", "")
JAZZCASH_API_URL = os.getenv(
    "JAZZCASH_API_URL",
    "https://sandbox.jazzcash.com.pk/ApplicationAPI/API/Payment/DoTransaction",
)

# Easypaisa
EASYPAISA_STORE_ID = os.getenv("EASYPAISA_STORE_ID", "")
EASYPAISA_HASH_KEY = os.getenv("EASYPAISA_HASH_KEY", "")
EASYPAISA_API_URL = os.getenv("EASYPAISA_API_URL", "https://easypay.easypaisa.com.pk/easypay")

# Notifications
RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
FROM_EMAIL = os.getenv("FROM_EMAIL", "Angel Baby Dresses <orders@angelbabydresses.com>")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@angelbabydresses.com")
WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v18.0")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN", "")

# Business rules
SHIPPING_RATE_PER_KG = 350  # PKR
ADVANCE_PAYMENT_SHARE = 0.5
SALE_CACHE_TTL = 60  # seconds
LOW_STOCK_THRESHOLD = 10

PAYMENT_ACCOUNTS = {
    "easypaisa": {
        "number": os.getenv("EASYPAISA_ACCOUNT_NUMBER", "03471504434"),
        "name": os.getenv("PAYMENT_ACCOUNT_NAME", "Quratulain Syed"),
    },
    "jazzcash": {
        "number": os.getenv("JAZZCASH_ACCOUNT_NUMBER", "03471504434"),
        "name": os.getenv("PAYMENT_ACCOUNT_NAME", "Quratulain Syed"),
    },
    "bank": {
        "name": os.getenv("BANK_NAME", "HBL (Habib Bank Limited)"),
        "account_number": os.getenv("BANK_ACCOUNT_NUMBER", "16817905812303"),
        "account_holder": os.getenv("PAYMENT_ACCOUNT_NAME", "Quratulain Syed"),
    },
}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
