import os

app = "main:app"
host = "0.0.0.0"
port = int(os.getenv("PORT", "9002"))
# The sandbox defaults to SQLite, which wants a single writer process
workers = int(os.getenv("UVICORN_WORKERS", "1"))
loop = "uvloop"  # needs uvicorn[standard]
http = "h11"
log_level = os.getenv("LOG_LEVEL", "info")
