import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ugc_payments.db")
OUTPUT_DIR = os.getenv("OUTPUT_DIR", "/tmp/ugc_payment_reports")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*")

# What happens to a VideoTierPayment row whose tier is no longer applicable
# to the creator (e.g. a niche with its own tiers was assigned):
#   keep_paid -> paid rows stay as frozen history, unpaid rows are removed
#   delete    -> every row for the superseded tier is removed
RETENTION_KEEP_PAID = "keep_paid"
RETENTION_DELETE = "delete"
_RETENTION_CHOICES = (RETENTION_KEEP_PAID, RETENTION_DELETE)

TIER_PAYMENT_RETENTION = os.getenv("TIER_PAYMENT_RETENTION", RETENTION_KEEP_PAID).strip().lower()
if TIER_PAYMENT_RETENTION not in _RETENTION_CHOICES:
    logger.warning(
        f"Unknown TIER_PAYMENT_RETENTION '{TIER_PAYMENT_RETENTION}', "
        f"falling back to '{RETENTION_KEEP_PAID}'"
    )
    TIER_PAYMENT_RETENTION = RETENTION_KEEP_PAID
