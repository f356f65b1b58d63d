bind = "127.0.0.1:8001"
workers = 2
worker_class = 'uvicorn.workers.UvicornWorker'
accesslog = 'logs/access_log'
errorlog = 'logs/error_log'
# each worker opens its own catalog engine and blob store on startup.
