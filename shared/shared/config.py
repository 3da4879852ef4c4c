import os

REDIS_URL = os.getenv("REDIS_URL")
if not REDIS_URL:
    raise RuntimeError("REDIS_URL environment variable is not set")

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events
EXCHANGE_NAME = "domain_events"
