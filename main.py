import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from backend.card_fallback import FallbackCardGenerator
from backend.knowledge_cards import DEFAULT_MAX_CHARS, PRINT_KEYWORDS
from backend.llm import DEFAULT_TEXT_MODEL, GEMINI_OPENAI_BASE_URL, LLMClient
from backend.log_events import log_important
from backend.relay import LiveSessionRelay, SessionNotFoundError
from backend.session_store import SessionStore
from backend.upstream import DEFAULT_MODELS, DEFAULT_VOICE, LIVE_API_URL, UpstreamConnector

# Setup Logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("Main")

_APP_LOGGERS = ("Main", "backend", "Relay")
_NOISY_LOGGERS = (
    "websockets",
    "httpx",
    "httpcore",
    "openai",
    "uvicorn.access",
)
_API_KEY_ENV_VARS = ("GEMINI_API_KEY", "VUE_APP_GEMINI_API_KEY")


class RelayConfigError(RuntimeError):
    """The relay cannot serve requests with the current configuration."""


# ============================================
# CONFIGURATION
# ============================================

DEFAULT_CONFIG = {
    # Live API
    "api_key": "",  # Empty means read GEMINI_API_KEY / VUE_APP_GEMINI_API_KEY.
    "live_api_url": LIVE_API_URL,
    # Tried in order until one completes the setup handshake.
    "live_models": list(DEFAULT_MODELS),
    "voice": DEFAULT_VOICE,
    "connect_timeout_seconds": 10.0,

    # Knowledge cards
    "print_keywords": list(PRINT_KEYWORDS),
    "fallback_delay_seconds": 5.2,
    "fallback_cooldown_seconds": 3.0,
    "fallback_history_entries": 12,
    "card_max_chars": DEFAULT_MAX_CHARS,
    "pending_cards_max": 50,
    "text_buffer_max_chars": 20000,

    # Fallback text model (OpenAI-compatible endpoint)
    "fallback_llm_enabled": True,
    "fallback_base_url": GEMINI_OPENAI_BASE_URL,
    "fallback_model": DEFAULT_TEXT_MODEL,
    "api_extra_headers": {},
    "api_fallback_enabled": True,
    # Ordered extra routes: [{"provider":"openai","api_key":"...","base_url":"...","model":"...","api_extra_headers":{}}]
    "api_routes": [],

    # Sessions / SSE
    "transcript_limit": 20,
    "session_sweep_interval_seconds": 60.0,
    "session_inactive_timeout_seconds": 300.0,
    "sse_keepalive_seconds": 30.0,
    "sse_max_queued_events": 512,

    # Server
    "host": "127.0.0.1",
    "port": 8000,
    "verbose_logging": False,
}


def _get_config_path() -> Optional[Path]:
    configured = os.environ.get("LIVE_RELAY_CONFIG_PATH")
    if configured:
        return Path(configured).expanduser().resolve()
    return None


def _coerce_headers(value: object) -> dict[str, str]:
    if isinstance(value, dict):
        out: dict[str, str] = {}
        for k, v in value.items():
            ks = str(k).strip()
            vs = str(v).strip()
            if ks and vs:
                out[ks] = vs
        return out
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return {}
        try:
            data = json.loads(s)
        except ValueError:
            return {}
        return _coerce_headers(data)
    return {}


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on", "y"):
            return True
        if s in ("0", "false", "no", "off", "n", ""):
            return False
    return default


def _coerce_str(value: object, default: str, *, strip: bool = True, max_len: int | None = None) -> str:
    if value is None:
        out = default
    elif isinstance(value, str):
        out = value
    else:
        out = str(value)
    if strip:
        out = out.strip()
    if max_len is not None and max_len >= 0:
        out = out[:max_len]
    return out


def _coerce_int_in_range(value: object, default: int, *, min_v: int | None = None, max_v: int | None = None) -> int:
    try:
        out = int(float(value))
    except (TypeError, ValueError):
        out = int(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_float_in_range(
    value: object,
    default: float,
    *,
    min_v: float | None = None,
    max_v: float | None = None,
) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        out = float(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_str_list(value: object, default: list[str], *, max_items: int = 32, max_len: int = 256) -> list[str]:
    if isinstance(value, str):
        value = [part for part in value.split(",")]
    if not isinstance(value, (list, tuple)):
        return list(default)
    out: list[str] = []
    for item in value:
        s = _coerce_str(item, "", max_len=max_len)
        if s and s not in out:
            out.append(s)
        if len(out) >= max_items:
            break
    return out or list(default)


def _sanitize_api_route_entry(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    base_url = _coerce_str(value.get("base_url"), "", max_len=2048)
    model = _coerce_str(value.get("model"), "", max_len=512)
    if not base_url or not model:
        return None
    return {
        "provider": _coerce_str(value.get("provider"), "custom", max_len=64).lower() or "custom",
        "api_key": _coerce_str(value.get("api_key"), "", max_len=4096),
        "base_url": base_url,
        "model": model,
        "api_extra_headers": _coerce_headers(value.get("api_extra_headers")),
        "enabled": _coerce_bool(value.get("enabled"), True),
    }


def _coerce_api_routes_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    out: list[dict[str, object]] = []
    for raw in value:
        item = _sanitize_api_route_entry(raw)
        if not item:
            continue
        out.append(item)
        if len(out) >= 8:
            break
    return out


def _sanitize_config_values(raw: dict | None, *, base: dict | None = None) -> dict:
    src: dict[str, object] = {}
    if isinstance(base, dict):
        src.update(base)
    if isinstance(raw, dict):
        src.update(raw)

    out: dict[str, object] = dict(DEFAULT_CONFIG)

    out["api_key"] = _coerce_str(src.get("api_key"), "", max_len=4096)
    out["live_api_url"] = _coerce_str(src.get("live_api_url"), LIVE_API_URL, max_len=2048) or LIVE_API_URL
    out["live_models"] = _coerce_str_list(src.get("live_models"), list(DEFAULT_MODELS), max_items=8)
    out["voice"] = _coerce_str(src.get("voice"), DEFAULT_VOICE, max_len=64) or DEFAULT_VOICE
    out["connect_timeout_seconds"] = _coerce_float_in_range(src.get("connect_timeout_seconds"), 10.0, min_v=1.0, max_v=120.0)

    out["print_keywords"] = _coerce_str_list(src.get("print_keywords"), list(PRINT_KEYWORDS), max_items=64, max_len=64)
    out["fallback_delay_seconds"] = _coerce_float_in_range(src.get("fallback_delay_seconds"), 5.2, min_v=0.0, max_v=60.0)
    out["fallback_cooldown_seconds"] = _coerce_float_in_range(src.get("fallback_cooldown_seconds"), 3.0, min_v=0.0, max_v=600.0)
    out["fallback_history_entries"] = _coerce_int_in_range(src.get("fallback_history_entries"), 12, min_v=1, max_v=200)
    out["card_max_chars"] = _coerce_int_in_range(src.get("card_max_chars"), DEFAULT_MAX_CHARS, min_v=40, max_v=4000)
    out["pending_cards_max"] = _coerce_int_in_range(src.get("pending_cards_max"), 50, min_v=1, max_v=1000)
    out["text_buffer_max_chars"] = _coerce_int_in_range(src.get("text_buffer_max_chars"), 20000, min_v=1000, max_v=1_000_000)

    out["fallback_llm_enabled"] = _coerce_bool(src.get("fallback_llm_enabled"), True)
    out["fallback_base_url"] = _coerce_str(src.get("fallback_base_url"), GEMINI_OPENAI_BASE_URL, max_len=2048) or GEMINI_OPENAI_BASE_URL
    out["fallback_model"] = _coerce_str(src.get("fallback_model"), DEFAULT_TEXT_MODEL, max_len=512) or DEFAULT_TEXT_MODEL
    out["api_extra_headers"] = _coerce_headers(src.get("api_extra_headers"))
    out["api_fallback_enabled"] = _coerce_bool(src.get("api_fallback_enabled"), True)
    out["api_routes"] = _coerce_api_routes_list(src.get("api_routes"))

    # Transcript must hold at least what the fallback summary reads.
    out["transcript_limit"] = _coerce_int_in_range(src.get("transcript_limit"), 20, min_v=1, max_v=500)
    if int(out["transcript_limit"]) < int(out["fallback_history_entries"]):
        out["transcript_limit"] = out["fallback_history_entries"]
    out["session_sweep_interval_seconds"] = _coerce_float_in_range(
        src.get("session_sweep_interval_seconds"), 60.0, min_v=1.0, max_v=3600.0
    )
    out["session_inactive_timeout_seconds"] = _coerce_float_in_range(
        src.get("session_inactive_timeout_seconds"), 300.0, min_v=10.0, max_v=86400.0
    )
    out["sse_keepalive_seconds"] = _coerce_float_in_range(src.get("sse_keepalive_seconds"), 30.0, min_v=1.0, max_v=300.0)
    out["sse_max_queued_events"] = _coerce_int_in_range(src.get("sse_max_queued_events"), 512, min_v=16, max_v=100000)

    out["host"] = _coerce_str(src.get("host"), "127.0.0.1", max_len=255) or "127.0.0.1"
    out["port"] = _coerce_int_in_range(src.get("port"), 8000, min_v=1, max_v=65535)
    out["verbose_logging"] = _coerce_bool(src.get("verbose_logging"), False)
    return out


def load_config() -> dict:
    loaded: dict = {}
    path = _get_config_path()
    if path is not None:
        try:
            if path.is_file():
                data = json.loads(path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    loaded = data
            else:
                logger.warning(f"Settings file not found: {path}")
        except Exception:
            logger.exception("Failed to load settings file")
    return _sanitize_config_values(loaded, base=DEFAULT_CONFIG)


def _resolve_api_key(cfg: dict) -> str:
    explicit = _coerce_str((cfg or {}).get("api_key"), "")
    if explicit:
        return explicit
    for name in _API_KEY_ENV_VARS:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return ""


def _apply_runtime_log_levels(cfg: dict) -> None:
    verbose = bool((cfg or {}).get("verbose_logging", False))

    for name in _APP_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.INFO)

    noisy_level = logging.INFO if verbose else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)

    log_important(
        "logging.mode",
        dedupe_key=f"verbose={verbose}",
        dedupe_window_s=0.5,
        verbose=verbose,
        noisy_level=("info" if verbose else "warning"),
    )


def build_llm_client(cfg: dict, api_key: str) -> Optional[LLMClient]:
    """Text model used to summarize the transcript when a print intent goes unanswered."""
    if not cfg.get("fallback_llm_enabled", True):
        return None

    fallback_routes = [
        {
            "provider": str(r.get("provider") or "custom"),
            "api_key": str(r.get("api_key") or ""),
            "base_url": str(r.get("base_url") or ""),
            "model": str(r.get("model") or ""),
            "api_extra_headers": _coerce_headers(r.get("api_extra_headers")),
        }
        for r in (cfg.get("api_routes") or [])
        if r.get("enabled", True)
    ]
    try:
        client = LLMClient(
            api_key=api_key,
            base_url=str(cfg.get("fallback_base_url") or GEMINI_OPENAI_BASE_URL),
            model=str(cfg.get("fallback_model") or DEFAULT_TEXT_MODEL),
            default_headers=_coerce_headers(cfg.get("api_extra_headers")),
            fallback_routes=fallback_routes,
            failover_enabled=bool(cfg.get("api_fallback_enabled", True)),
        )
    except ValueError:
        log_important("llm.unconfigured", level=logging.WARNING, dedupe_key="no-api-key", dedupe_window_s=30.0)
        return None

    log_important(
        "llm.configured",
        model=client.model,
        base_url=client.base_url,
        routes=len(client.endpoints),
        fallback_enabled=client.failover_enabled,
    )
    return client


def build_relay(
    cfg: dict,
    store: SessionStore,
    api_key: str,
    *,
    connector: UpstreamConnector | None = None,
    card_generator: FallbackCardGenerator | None = None,
) -> LiveSessionRelay:
    if connector is None:
        connector = UpstreamConnector(
            api_key,
            url=str(cfg["live_api_url"]),
            models=list(cfg["live_models"]),
            voice=str(cfg["voice"]),
            connect_timeout_s=float(cfg["connect_timeout_seconds"]),
        )
    if card_generator is None:
        card_generator = FallbackCardGenerator(
            build_llm_client(cfg, api_key),
            history_entries=int(cfg["fallback_history_entries"]),
            max_chars=int(cfg["card_max_chars"]),
        )
    return LiveSessionRelay(
        store,
        connector,
        card_generator,
        print_keywords=list(cfg["print_keywords"]),
        fallback_delay_s=float(cfg["fallback_delay_seconds"]),
        fallback_cooldown_s=float(cfg["fallback_cooldown_seconds"]),
        keepalive_s=float(cfg["sse_keepalive_seconds"]),
        channel_max_events=int(cfg["sse_max_queued_events"]),
    )


# Configuration
config = load_config()
_apply_runtime_log_levels(config)


# ============================================
# APP
# ============================================

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _require_relay(request: Request) -> LiveSessionRelay:
    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        raise RelayConfigError("API key not configured")
    return relay


def create_app(
    cfg: dict | None = None,
    *,
    connector: UpstreamConnector | None = None,
    card_generator: FallbackCardGenerator | None = None,
) -> FastAPI:
    app_cfg = _sanitize_config_values(cfg, base=DEFAULT_CONFIG) if cfg is not None else config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Server starting...")
        store = SessionStore(
            sweep_interval_s=float(app_cfg["session_sweep_interval_seconds"]),
            inactive_timeout_s=float(app_cfg["session_inactive_timeout_seconds"]),
            transcript_limit=int(app_cfg["transcript_limit"]),
            pending_cards_max=int(app_cfg["pending_cards_max"]),
            text_buffer_max_chars=int(app_cfg["text_buffer_max_chars"]),
        )
        api_key = _resolve_api_key(app_cfg)
        relay = None
        if api_key:
            relay = build_relay(app_cfg, store, api_key, connector=connector, card_generator=card_generator)
        else:
            log_important("relay.unconfigured", level=logging.WARNING, env=",".join(_API_KEY_ENV_VARS))
        app.state.config = app_cfg
        app.state.store = store
        app.state.relay = relay
        store.start()
        log_important(
            "server.starting",
            configured=relay is not None,
            models=",".join(app_cfg["live_models"]),
            sweep_s=app_cfg["session_sweep_interval_seconds"],
        )
        yield
        logger.info("Shutting down...")
        log_important("server.stopping", sessions=len(store))
        await store.stop()

    app = FastAPI(lifespan=lifespan)

    @app.exception_handler(RelayConfigError)
    async def _relay_config_error(request: Request, exc: RelayConfigError):
        log_important("relay.rejected", level=logging.ERROR, dedupe_key="config", dedupe_window_s=10.0, error=str(exc))
        return _error(str(exc), 500)

    @app.exception_handler(SessionNotFoundError)
    async def _session_not_found(request: Request, exc: SessionNotFoundError):
        return _error("Session not found", 404)

    # ============================================
    # HTTP ROUTES
    # ============================================

    @app.get("/api/health")
    def health(request: Request):
        store = getattr(request.app.state, "store", None)
        return {
            "status": "ok",
            "configured": getattr(request.app.state, "relay", None) is not None,
            "models": list(app_cfg["live_models"]),
            "sessions": len(store) if store is not None else 0,
        }

    @app.get("/api/live-session")
    async def live_session_events(request: Request):
        relay = _require_relay(request)
        session_id = str(request.query_params.get("sessionId") or "").strip()
        if not session_id:
            return _error("Missing sessionId", 400)
        return StreamingResponse(
            relay.stream(session_id),
            media_type="text/event-stream",
            headers=dict(_SSE_HEADERS),
        )

    @app.post("/api/live-session")
    async def live_session_command(request: Request):
        relay = _require_relay(request)
        try:
            data = await request.json()
        except Exception:
            return _error("Invalid JSON", 400)
        if not isinstance(data, dict):
            return _error("JSON body must be an object", 400)

        session_id = _coerce_str(data.get("sessionId"), "", max_len=256)
        if not session_id:
            return _error("Missing sessionId", 400)

        action = data.get("action")
        try:
            if action == "init":
                script = data.get("script")
                if not isinstance(script, str) or not script.strip():
                    return _error("Missing script", 400)
                cards = data.get("knowledgeCards")
                relay.store.init(session_id, script, cards if isinstance(cards, list) else None)
                return {"success": True, "sessionId": session_id}

            if action == "send":
                audio_data = data.get("audioData")
                if not isinstance(audio_data, str) or not audio_data:
                    return _error("Invalid action or missing data", 400)
                queued = await relay.send_audio(session_id, audio_data)
                if queued:
                    return {"success": True, "queued": True}
                return {"success": True}

            if action == "disconnect":
                relay.store.disconnect(session_id)
                return {"success": True}
        except SessionNotFoundError:
            raise
        except Exception as e:
            logger.exception(f"[{session_id}] Live session request failed")
            return _error(str(e) or "Internal server error", 500)

        return _error("Invalid action or missing data", 400)

    return app


app = create_app()


def start_server(host: str, port: int):
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    server_host = os.environ.get("LIVE_RELAY_HOST") or str(config["host"])
    try:
        server_port = int(os.environ.get("LIVE_RELAY_PORT") or config["port"])
    except ValueError:
        logger.error("LIVE_RELAY_PORT must be an integer")
        sys.exit(2)
    logger.info(f"Starting server on http://{server_host}:{server_port}")
    try:
        start_server(server_host, server_port)
    except KeyboardInterrupt:
        logger.info("Stopping...")
