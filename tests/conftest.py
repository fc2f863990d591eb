import os
import tempfile

# Keep rotating log files out of the working tree
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="tripsync-logs-"))
