"""Global pytest configuration."""

import os

# Keep tests on the in-memory knowledge service before any imports
os.environ["OPENAI_API_KEY"] = ""
