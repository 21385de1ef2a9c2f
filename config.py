import os
import logging
from dotenv import load_dotenv

# Load .env file if present
load_dotenv()

# -------------------
# App Configurations
# -------------------
APP_NAME = "Classroom Access Code Server"
APP_VERSION = "1.0.0"

# Server settings
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Allowed CORS origins (default: all)
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

# Data storage folder
DATA_DIR = os.getenv("DATA_DIR", "data")

# -------------------
# Access Codes
# -------------------
CODE_LENGTH = int(os.getenv("CODE_LENGTH", 8))
BULK_MAX_CODES = int(os.getenv("BULK_MAX_CODES", 1000))
CODE_GENERATION_ATTEMPTS = int(os.getenv("CODE_GENERATION_ATTEMPTS", 16))

# -------------------
# Logging Configuration
# -------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger(APP_NAME)
