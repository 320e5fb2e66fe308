import os
import tempfile

# main configures file logging at import time
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="pricing-logs-"))
