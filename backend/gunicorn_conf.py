# backend/gunicorn_conf.py
#
# Usage: gunicorn -c gunicorn_conf.py clinicbot.main:app

import os

from clinicbot.config.settings import settings

bind = os.getenv("BIND", "0.0.0.0:8000")
workers = settings.workers
worker_class = "uvicorn.workers.UvicornWorker"

# Channel adapters may hold a request open while a turn waits on the classifier
timeout = 60
graceful_timeout = 30

# Behind a reverse proxy; X-Forwarded-For feeds the HTTP rate limiter
forwarded_allow_ips = "*"

# --- Logging ---
# structlog renders application logs; gunicorn only adds its own lines to stdout/stderr
accesslog = "-"
errorlog = "-"
loglevel = "info"
