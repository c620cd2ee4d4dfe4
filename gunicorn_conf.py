"""
Gunicorn Configuration for the PayPal deposit service
Uvicorn workers serving webhook_server:app
"""
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"
backlog = 2048

# Worker processes
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
max_requests = 10000  # Restart workers after 10k requests
max_requests_jitter = 1000
timeout = 60  # PayPal calls are bounded at 15s each
keepalive = 30

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

# Process naming
proc_name = "paypal_deposit_service"

# Each worker runs its own scheduler and event loop
preload_app = False


def when_ready(server):
    """Called just after the server is started."""
    print(f"✅ Gunicorn ready with {workers} uvicorn workers on {bind}")


def post_fork(server, worker):
    """Called just after a worker has been forked."""
    print(f"🔧 Worker {worker.pid} started")


def worker_exit(server, worker):
    """Called just after a worker has been exited."""
    print(f"👋 Worker {worker.pid} exited")
