"""
Root pytest configuration for Haven.

Sets up Python path and test environment variables for all test directories.
"""

import os
import sys
from pathlib import Path

# Set test environment variables before anything else imports settings
os.environ.setdefault("HAVEN_ENVIRONMENT", "testing")
os.environ.setdefault("HAVEN_OBSERVABILITY__LOG_LEVEL", "DEBUG")
os.environ.setdefault("HAVEN_LLM_BASE_URL", "http://inference.test/v1")
os.environ.setdefault("HAVEN_LLM_API_KEY", "test_api_key_for_pytest_only")
os.environ.setdefault("HAVEN_LLM_RETRY_DELAY_SECONDS", "0")

# Project root
project_root = Path(__file__).parent

# Add src directory to path for imports (haven_common)
src_path = project_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

# Add project root to path
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))
