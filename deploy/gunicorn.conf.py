"""
Gunicorn configuration for the tournament engine API.

    gunicorn -c deploy/gunicorn.conf.py tourney.main:app

Every worker runs its own timeout sweep when SCHEDULER_ENABLED is set.
Sweeps in different workers may overlap; guarded updates make the loser
of each race skip the match. Set SCHEDULER_ENABLED=false on all but one
host to avoid the duplicate work.
"""
import os
import multiprocessing

# Server socket
bind = os.environ.get("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
workers = int(os.environ.get("WEB_CONCURRENCY", multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = 120
keepalive = 5

# Logging
accesslog = os.environ.get("GUNICORN_ACCESS_LOG", "-")
errorlog = os.environ.get("GUNICORN_ERROR_LOG", "-")
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "tourney"

# Server mechanics
daemon = False
pidfile = "/tmp/tourney-gunicorn.pid"

# Security
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190


def when_ready(server):
    server.log.info(f"Tournament engine ready with {workers} workers")
