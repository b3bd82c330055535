import os
import tempfile

# Settings are read once at import time; keep the default database out of the repo.
os.environ.setdefault("FINANCE_DATA_DIR", tempfile.mkdtemp(prefix="finance-tests-"))
