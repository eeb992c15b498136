import os
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Module-level singletons read these at import time, so they must be set first.
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="gruas-tests-")
os.environ["DISPATCH_DB_PATH"] = os.path.join(_TEST_DATA_DIR, "dispatch.sqlite3")
os.environ["DISTANCE_CACHE_DB_PATH"] = os.path.join(_TEST_DATA_DIR, "distance_cache.sqlite3")
os.environ["PIN_HASH_ROUNDS"] = "4"
os.environ["ADMIN_USER_IDS"] = "admin_root"
os.environ["MOP_USER_IDS"] = "mop_root"
os.environ["AUTH_REQUIRED"] = "false"
for _name in ("GOOGLE_MAPS_API_KEY", "FIREBASE_CREDENTIALS_PATH", "WHATSAPP_TOKEN", "SERVICE_AREA_BOUNDS"):
    os.environ.pop(_name, None)
