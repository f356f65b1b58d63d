import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse

from vaultstore.errors import FileTooLargeError, QuotaExceededError, ValidationError
from .api import router as api_router
from .authentication import AuthenticationError
from .persist import database

app = FastAPI(title="vaultstore")
app.include_router(api_router)

logger = logging.getLogger("vaultstore")


@app.on_event("startup")
def startup_event():
    if not database.is_connected:
        database.connect()


@app.on_event("shutdown")
def shutdown_event():
    database.disconnect()


@app.exception_handler(AuthenticationError)
def _auth_err(request, exc: AuthenticationError):
    return PlainTextResponse(str(exc), status_code=401)


@app.exception_handler(ValidationError)
def _validation_err(request, exc: ValidationError):
    status = 413 if isinstance(exc, (FileTooLargeError, QuotaExceededError)) else 400
    return JSONResponse({"detail": str(exc)}, status_code=status)


@app.exception_handler(Exception)
def _any_err(request, exc: Exception):
    logger.exception("internal vault error")
    return PlainTextResponse("internal vault error", status_code=500)


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


# run in dev:
# uvicorn vaultstore.api.app:app --reload

# run in prod:
# gunicorn -c gunicorn_conf.py vaultstore.api.app:app

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=3000)
