import os

# OCPP 1.6 central system (charge points connect to ws://OCPP_HOST:OCPP_PORT/ocpp/<cpid>)
OCPP_HOST = os.getenv("OCPP_HOST", "0.0.0.0")
OCPP_PORT = int(os.getenv("OCPP_PORT", "9000"))

# HTTP control API
HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("HTTP_PORT", "8080"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Payments
CURRENCY = os.getenv("CURRENCY", "pln")
STRIPE_API_URL = os.getenv("STRIPE_API_URL", "https://api.stripe.com/v1")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_SIMULATION = os.getenv("STRIPE_SIMULATION", "1") == "1"
STRIPE_API_TIMEOUT = float(os.getenv("STRIPE_API_TIMEOUT", "15"))  # seconds

# Device commands
DEVICE_COMMAND_TIMEOUT_SEC = float(os.getenv("DEVICE_COMMAND_TIMEOUT_SEC", "5"))
DEFAULT_ID_TAG = os.getenv("DEFAULT_ID_TAG", "PREPAID")
DEFAULT_OCPP_CONNECTOR = int(os.getenv("DEFAULT_OCPP_CONNECTOR", "1"))

# Simulated metering when no charge point answers
SIM_TICK_INTERVAL_SEC = float(os.getenv("SIM_TICK_INTERVAL_SEC", "2"))
SIM_POWER_KW = float(os.getenv("SIM_POWER_KW", "22"))  # 22 kW AC draw

# Receipts (empty SMTP_HOST -> receipts are only logged)
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_STARTTLS = os.getenv("SMTP_STARTTLS", "1") == "1"
RECEIPT_SENDER = os.getenv("RECEIPT_SENDER", "receipts@chargepay.local")

SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "1") == "1"
