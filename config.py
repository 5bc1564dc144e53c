"""
Configuration file for the KrishiLink marketplace API
"""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API metadata
API_TITLE = "KrishiLink API"
API_VERSION = "1.0.0"

# Document store backend: "firestore" for Firebase, "memory" for local development
STORE_BACKEND = os.getenv("STORE_BACKEND", "firestore").lower()
CROPS_COLLECTION = os.getenv("CROPS_COLLECTION", "crops")

# Upper bound (seconds) for a single store call
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))

# Attempts a Firestore transaction makes under contention before giving up
TRANSACTION_MAX_ATTEMPTS = int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "5"))

# Firebase credentials (service account file or inline JSON)
FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH")
FIREBASE_CREDENTIALS_JSON = os.getenv("FIREBASE_CREDENTIALS_JSON")

# When Firebase is not initialized, trust the user-email/user-name headers instead
AUTH_DEV_MODE = os.getenv("AUTH_DEV_MODE", "1") == "1"
DEV_USER_EMAIL = "dev@example.com"
DEV_USER_UID = "dev-user-id"
DEV_USER_NAME = "Dev User"

# Number of crops returned by the homepage "latest" listing
LATEST_CROPS_LIMIT = int(os.getenv("LATEST_CROPS_LIMIT", "6"))

# Allowed origins for the React frontend
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Crop fields an owner may edit after creation. Quantity is excluded: stock only
# moves through interest acceptance.
EDITABLE_CROP_FIELDS = (
    "name",
    "type",
    "price_per_unit",
    "unit",
    "description",
    "location",
    "image",
    "status",
)
