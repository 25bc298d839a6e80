"""Repository-level pytest setup.

Keeps the application from starting its background scheduler or writing
into the working directory when ``src.main`` is imported by tests.
"""

import os
import tempfile

os.environ.setdefault("SCHEDULER_AUTOSTART", "false")
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="model-lifecycle-tests-"))
os.environ.setdefault("JSON_LOGS", "false")
