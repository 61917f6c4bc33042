"""Runtime configuration read from the environment (and a local .env file)."""

import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
DB_NAME = os.environ.get('DB_NAME', 'membership_db')

# Auth
JWT_SECRET = os.environ.get('JWT_SECRET', 'change-me-in-production-use-a-long-random-secret')
JWT_ALGORITHM = os.environ.get('JWT_ALGORITHM', 'HS256')

# Razorpay
RAZORPAY_KEY_ID = os.environ.get('RAZORPAY_KEY_ID', '')
RAZORPAY_KEY_SECRET = os.environ.get('RAZORPAY_KEY_SECRET', '')
RAZORPAY_WEBHOOK_SECRET = os.environ.get('RAZORPAY_WEBHOOK_SECRET', '')

# Total read-compute-write attempts for a membership replace
MEMBERSHIP_WRITE_ATTEMPTS = int(os.environ.get('MEMBERSHIP_WRITE_ATTEMPTS', '2'))

CORS_ORIGINS = [origin.strip() for origin in os.environ.get('CORS_ORIGINS', '*').split(',') if origin.strip()]
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
