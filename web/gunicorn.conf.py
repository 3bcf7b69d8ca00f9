import os


def cpu():
    return max(1, (os.cpu_count() or 1))


bind = os.getenv("GUNI_BIND", "0.0.0.0:8000")
wsgi_app = "config.wsgi:application"

# Worker processes
workers = int(os.getenv("GUNI_WORKERS", min(max(2, cpu() * 2), 8)))

# Threads per worker; cart requests block on the cache backend
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# Cart and health requests are short
timeout = int(os.getenv("GUNI_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

# The default LocMemCache is per process; set CACHE_BACKEND to share carts across workers
preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

# Access and error logs to stdout; app logs go through the JSON formatter
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
