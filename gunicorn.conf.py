"""
Gunicorn configuration.
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"

# Worker configuration
workers = int(os.getenv('GUNICORN_WORKERS', '2'))
worker_class = 'sync'
# Must exceed PAYMENT_GATEWAY_TIMEOUT with room for the database work around it
timeout = 60
keepalive = 5

# Logging
accesslog = '-'
errorlog = '-'
loglevel = os.getenv('LOG_LEVEL', 'info')
capture_output = True

proc_name = 'sipgrounds'

preload_app = True

graceful_timeout = 30


def on_starting(server):
    print("[Gunicorn] Starting SipGrounds server...")


def on_exit(server):
    print("[Gunicorn] SipGrounds server shutting down...")
