"""Constants for Gmail Phish Guard."""

import os
from pathlib import Path

# --- Config paths ---
CONFIG_DIR = Path(os.environ.get("PHISH_GUARD_HOME", Path.home() / ".gmail-phish-guard"))
CREDENTIALS_PATH = CONFIG_DIR / "credentials.json"
TOKEN_PATH = CONFIG_DIR / "token.json"
STORE_DB_PATH = CONFIG_DIR / "store.db"
DEFAULT_ACCOUNT_ID = "default"

# --- Gmail API ---
SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
BATCH_SIZE = 50  # messages per BatchHttpRequest
PAGE_SIZE = 500  # messages per list page
METADATA_HEADERS = ["From", "Reply-To", "Subject"]

# --- Scoring weights ---
WEIGHT_DISPLAY_NAME_MISMATCH = 3
WEIGHT_NO_SENDER_NAME = 1
WEIGHT_FINANCIAL_TERMS = 1
WEIGHT_FINANCIAL_TERMS_SUBJECT = 1
WEIGHT_GENERIC_GREETING = 2
WEIGHT_URGENCY = 1
WEIGHT_SUSPICIOUS_DOMAIN = 2

# --- Scoring thresholds ---
SUSPICION_THRESHOLD = 3
MIN_BODY_FINANCIAL_CATEGORIES = 2
MIN_SUBJECT_FINANCIAL_CATEGORIES = 1
MIN_URGENCY_CATEGORIES = 2

# --- Display-name matching tunables ---
MIN_OVERLAP_LENGTH = 4  # shared substring length that counts as a match
MIN_AFFIX_LENGTH = 3  # name token / local part prefix match
MAX_FUZZY_LENGTH_DIFF = 3
FUZZY_OVERLAP_RATIO = 0.6
FUZZY_MIN_SHARED_CHARS = 4

# Financial lure categories (one regex per category)
FINANCIAL_TERM_PATTERNS = [
    r"overdue|past due|late payment|collection",
    r"wire transfer|money transfer|bank transfer",
    r"gift card|prepaid card|voucher|coupon",
    r"credit score|credit report|credit monitoring",
    r"loan|mortgage|debt consolidation",
    r"investment|trading|forex|cryptocurrency|investment opportunity",
    r"\b(?:ico|token|token sale|nft|mint|seed|seed phrase|wallet)\b",
    r"\bsend\b",
    r"disbursement|airdrop|cash prize",
    r"\bssa\b",
]

GENERIC_GREETING_PATTERNS = [
    r"dear user|dear customer|dear valued customer",
    r"hello user|hello customer",
    r"dear account holder|dear member",
    r"dear sir/madam|to whom it may concern",
    r"dear client|dear subscriber",
    r"greetings user|greetings customer",
]

URGENCY_PATTERNS = [
    r"urgent|asap|immediately|act now|limited time|expires",
    r"verify|confirm|validate|update|suspended|locked",
    r"click here|click below|follow this link",
]

SUSPICIOUS_DOMAIN_PATTERNS = [
    r"^[a-z0-9.-]+\.tk$",
    r"^[a-z0-9.-]+\.ml$",
    r"^[a-z0-9.-]+\.ga$",
    r"^[a-z0-9.-]+\.cf$",
    r"^[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+$",
]

# Role-account local parts that say nothing about who is writing when they
# come from a free webmail provider.
GENERIC_LOCAL_PARTS = {
    "admin",
    "account",
    "accounts",
    "billing",
    "contact",
    "help",
    "helpdesk",
    "info",
    "mail",
    "noreply",
    "no-reply",
    "office",
    "security",
    "service",
    "services",
    "support",
    "team",
}

FREE_MAIL_DOMAINS = {
    "aol.com",
    "gmail.com",
    "gmx.com",
    "googlemail.com",
    "hotmail.com",
    "icloud.com",
    "live.com",
    "mail.com",
    "outlook.com",
    "proton.me",
    "protonmail.com",
    "yahoo.com",
    "yandex.com",
}

# --- Analysis cache ---
MAX_CACHE_SIZE = 200
CACHE_EXPIRY = 2 * 60 * 60  # seconds
FORCE_CLEANUP_THRESHOLD = 250
CACHE_CLEANUP_TRIGGER = 0.8  # fraction of MAX_CACHE_SIZE that triggers cleanup on insert
FORCE_CLEANUP_KEEP = 0.75  # fraction of FORCE_CLEANUP_THRESHOLD kept by the fast path

# --- Allow-list ---
MAX_ALLOWLIST_SIZE = 10_000

# --- Batching ---
BATCH_SAVE_DELAY = 2.0  # seconds
MAX_BATCH_SIZE = 50  # force flush once the pending total exceeds this

# --- Persistence ---
MAX_SAVE_FAILURES = 3
MAX_PAYLOAD_BYTES = 4 * 1024 * 1024
STORAGE_QUOTA_BYTES = 5 * 1024 * 1024
READ_RETRY_ATTEMPTS = 3
STATS_FORMAT_VERSION = "2.0"

# --- Scan lifecycle ---
IDLE_SECONDS = 2.0
IDLE_CHECK_INTERVAL = 0.5
CLEANUP_DELAY = 5.0

# --- Display ---
PREVIEW_LENGTH = 60
