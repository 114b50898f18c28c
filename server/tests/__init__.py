"""Test package for messenger unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
logging.getLogger("messenger").setLevel(logging.WARNING)
