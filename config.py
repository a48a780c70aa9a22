import os
from dotenv import load_dotenv

load_dotenv()

# Remote code execution (Judge0 via RapidAPI)
JUDGE0_API_KEY = os.getenv("JUDGE0_API_KEY")
JUDGE0_API_HOST = os.getenv("JUDGE0_API_HOST", "judge0-ce.p.rapidapi.com")

# "firestore" or "memory"
DATABASE_BACKEND = os.getenv("DATABASE_BACKEND", "firestore")

# Firebase client config; either both of API key + project id, or none
FIREBASE_API_KEY = os.getenv("FIREBASE_API_KEY")
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
FIREBASE_AUTH_DOMAIN = os.getenv("FIREBASE_AUTH_DOMAIN")
FIREBASE_STORAGE_BUCKET = os.getenv("FIREBASE_STORAGE_BUCKET")
FIREBASE_MESSAGING_SENDER_ID = os.getenv("FIREBASE_MESSAGING_SENDER_ID", "")
FIREBASE_APP_ID = os.getenv("FIREBASE_APP_ID", "")

# Where per-client state (fallback uid, config override, display name) lives
LOCAL_STATE_PATH = os.getenv("LOCAL_STATE_PATH", "./.cocode_state.json")

PRESENCE_HEARTBEAT_SECONDS = float(os.getenv("PRESENCE_HEARTBEAT_SECONDS", "20"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "cocode.log")
