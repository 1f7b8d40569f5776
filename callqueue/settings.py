"""Configuration for the outbound call queue."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Database connection
DATABASE_URL = os.getenv("DATABASE_URL")

# ElevenLabs calling API
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY")
ELEVENLABS_API_URL = os.getenv("ELEVENLABS_API_URL", "https://api.elevenlabs.io")
DISPATCH_TIMEOUT = int(os.getenv("DISPATCH_TIMEOUT", "30"))  # seconds per outbound call request

# Queue processor settings
POLL_INTERVAL = int(os.getenv("POLL_INTERVAL", "5"))  # seconds between queue polls
MAX_CONCURRENT_CALLS = int(os.getenv("MAX_CONCURRENT_CALLS", "3"))
MAX_ALLOWED_CONCURRENT = int(os.getenv("MAX_ALLOWED_CONCURRENT", "15"))  # hard ceiling
# One connection per dispatch thread plus the poll loop and dashboard reads
DB_MAX_CONNECTIONS = int(os.getenv("DB_MAX_CONNECTIONS", str(MAX_ALLOWED_CONCURRENT + 2)))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
RETRY_DELAY_SECONDS = int(os.getenv("RETRY_DELAY_SECONDS", "0"))
STUCK_PROCESSING_MINUTES = int(os.getenv("STUCK_PROCESSING_MINUTES", "30"))

# Operator availability
AUTO_QUEUE_ENABLED = os.getenv("AUTO_QUEUE_ENABLED", "true").lower() in ("1", "true", "yes")
AVAILABILITY_CHECK_INTERVAL = int(os.getenv("AVAILABILITY_CHECK_INTERVAL", "10"))
TOTAL_OPERATORS = int(os.getenv("TOTAL_OPERATORS", "4"))
TRANSFER_TIMEOUT_SECONDS = int(os.getenv("TRANSFER_TIMEOUT_SECONDS", "300"))

# 3CX PBX (optional extension polling)
TCX_API_URL = os.getenv("TCX_API_URL")
TCX_API_EMAIL = os.getenv("TCX_API_EMAIL")
TCX_API_PASSWORD = os.getenv("TCX_API_PASSWORD")
TCX_EXTENSIONS = [
    ext.strip() for ext in os.getenv("TCX_EXTENSIONS", "1000,2000,3000,4000").split(",") if ext.strip()
]
TCX_POLL_INTERVAL = int(os.getenv("TCX_POLL_INTERVAL", "10"))


def validate_config():
    """Validate required configuration."""
    errors = []
    
    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")
    
    if not ELEVENLABS_API_KEY:
        errors.append("ELEVENLABS_API_KEY is required")
    
    if MAX_ALLOWED_CONCURRENT < 1:
        errors.append(f"MAX_ALLOWED_CONCURRENT must be at least 1: {MAX_ALLOWED_CONCURRENT}")
    elif not 1 <= MAX_CONCURRENT_CALLS <= MAX_ALLOWED_CONCURRENT:
        errors.append(
            f"MAX_CONCURRENT_CALLS must be between 1 and {MAX_ALLOWED_CONCURRENT}: {MAX_CONCURRENT_CALLS}"
        )
    
    if MAX_RETRIES < 1:
        errors.append(f"MAX_RETRIES must be at least 1: {MAX_RETRIES}")
    
    if TCX_API_URL and not (TCX_API_EMAIL and TCX_API_PASSWORD):
        errors.append("TCX_API_EMAIL and TCX_API_PASSWORD are required when TCX_API_URL is set")
    
    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
