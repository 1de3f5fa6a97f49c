"""
Gunicorn configuration for the exam results API.

Run with: gunicorn -c deploy/gunicorn.conf.py
"""
import os
import multiprocessing

wsgi_app = "exam_results.main:app"

# Server socket
bind = os.environ.get("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
workers = int(os.environ.get("WEB_CONCURRENCY", multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
# Finalize waits on the external evaluator (EVALUATION_TIMEOUT_SECONDS per call)
timeout = 180
keepalive = 5

# Logging
accesslog = os.environ.get("GUNICORN_ACCESS_LOG", "-")
errorlog = os.environ.get("GUNICORN_ERROR_LOG", "-")
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "exam-results"

# Server mechanics
daemon = False
pidfile = "/tmp/gunicorn.pid"

# Security
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190


def when_ready(server):
    """Called just after the server is started."""
    server.log.info(f"Exam results API ready on {bind} with {workers} workers")


def worker_int(worker):
    """Called when a worker receives SIGINT or SIGQUIT."""
    worker.log.info(f"Worker {worker.pid} interrupted")
