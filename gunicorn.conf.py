import multiprocessing
import os

wsgi_app = "bookpromo:create_app()"

# Downloads stream files, so prefer threads over extra processes
workers = int(os.environ.get("WEB_CONCURRENCY", multiprocessing.cpu_count() + 1))
threads = int(os.environ.get("GUNICORN_THREADS", 4))
worker_class = "gthread"
# Not preloaded: each worker opens its own DB and redis connections
preload_app = False
bind = os.environ.get("BIND", ":8000")
# Render/Heroku style proxy headers
forwarded_allow_ips = "*"
timeout = 60
keepalive = 75
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info")
