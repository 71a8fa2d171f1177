import os
import multiprocessing

wsgi_app = "config.wsgi:application"
bind = os.getenv("GUNI_BIND", "0.0.0.0:8000")

# Checkout holds row locks for the whole transaction; keep the pool modest
workers = int(os.getenv("GUNI_WORKERS", str(min(max(2, multiprocessing.cpu_count() * 2), 8))))

# Payment-status ticks block on the gateway, so threads per worker
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

timeout = int(os.getenv("GUNI_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

# Application logs go through Django's LOGGING (JSON); these are gunicorn's own
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
