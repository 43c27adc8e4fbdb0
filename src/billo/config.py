# src/billo/config.py
import os
from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

API_KEY = os.getenv("API_KEY")  # Shared bearer secret, checked per request

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./billo.db")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")

# --- Email (Resend) ---
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "Billo")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "notifications@billo.app")
EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "10"))

# Currency is a label only, no conversion happens anywhere
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
