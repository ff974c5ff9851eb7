import os
import tempfile

# Process settings are read once; point them away from the source tree before anything imports them.
os.environ.setdefault("CHATRELAY_LOG_FILE", os.path.join(tempfile.gettempdir(), "chatrelay-tests.log"))
os.environ.setdefault("CHATRELAY_DB_PATH", ":memory:")
os.environ.setdefault("CHATRELAY_LOG_CAPACITY", "1000")
