import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.requests import Request

from . import config
from .auth import AuthRequest, Rejected, RATE_LIMITED, gate, redact_form
from .channel_auth import ChannelAuthError, ChannelAuthenticator, presence_data
from .config import ConfigurationError, credentials_from_env

logger = logging.getLogger(__name__)

app = FastAPI()

# --- CORS Configuration ---

EXPOSE_HEADERS = ["content-encoding", "date", "server", "content-length"]

AUTH_RESPONSE_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-expose-headers": ",".join(EXPOSE_HEADERS),
}

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get_cors_origins(),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=EXPOSE_HEADERS,
)

_authenticator = ChannelAuthenticator(credentials_from_env())


@app.on_event("startup")
async def startup_event():
    missing = _authenticator.credentials.missing()
    if missing:
        logger.warning("Pusher credentials incomplete, auth requests will fail: %s", ", ".join(missing))
    if not config.CHAT_PASSWORD:
        logger.warning("PASSWORD is not set, auth requests will fail")


@app.get("/api/health")
async def health_check():
    return {"status": "ok"}


async def auth_pusher(request: Request):
    """Gate on the shared password, then sign a presence grant.

    Form fields: ``password``, ``socket_id``, ``channel_name``, ``name``.
    """
    client_ip = request.client.host if request.client else "unknown"
    form = await request.form()
    fields = {k: str(v) for k, v in form.items()}
    logger.info("Auth request from %s: %s", client_ip, redact_form(fields))
    req = AuthRequest(**{k: fields.get(k, "") for k in AuthRequest.model_fields})

    try:
        result = gate(client_ip, fields.get("password"))
    except ConfigurationError:
        logger.exception("Auth endpoint misconfigured")
        raise HTTPException(status_code=500, detail="Server misconfigured")

    if isinstance(result, Rejected):
        if result.reason == RATE_LIMITED:
            raise HTTPException(status_code=429, detail="Too many auth attempts. Try again later.")
        logger.warning("Rejected auth for socket %s on %s", req.socket_id, req.channel_name)
        return PlainTextResponse("Password didn't match", status_code=401)

    try:
        payload = _authenticator.authenticate(
            req.socket_id,
            req.channel_name,
            presence_data(req.socket_id, req.name),
        )
    except (ConfigurationError, ChannelAuthError):
        logger.exception("Channel authentication failed for %s", req.channel_name)
        raise HTTPException(status_code=500, detail="Channel authentication failed")

    return JSONResponse(payload, headers=AUTH_RESPONSE_HEADERS)


app.add_api_route("/api/auth-pusher", auth_pusher, methods=["POST"])
if config.CHAT_AUTH_PATH != "/api/auth-pusher":
    app.add_api_route(config.CHAT_AUTH_PATH, auth_pusher, methods=["POST"])
