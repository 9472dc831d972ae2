import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "marketplace")

ADMIN_KEY = os.getenv("ADMIN_KEY", "demo-admin-key")
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "demo-webhook-secret")

CURRENCY = os.getenv("CURRENCY", "INR")
TAX_RATE_PERCENT = float(os.getenv("TAX_RATE_PERCENT", "0"))
SHIPPING_PER_ITEM = float(os.getenv("SHIPPING_PER_ITEM", "150"))
COMMISSION_RATE = float(os.getenv("COMMISSION_RATE", "0.1"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
