import os
import json
import logging
import secrets
from typing import Any, Dict, List, Optional

import requests
from fastapi import FastAPI, UploadFile, File, Form, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from override_rules import (
    ConfigOverride, dump_config, dump_config_compact, find_missing_references, parse_arguments,
)
from subscription import (
    ProxyFilter, SubscriptionParser, fetch_subscription, format_subscription_info,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Clash Override Rules")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get('DATA_DIR', BASE_DIR)
CONFIG_FILE = os.path.join(DATA_DIR, 'config.json')

os.makedirs(DATA_DIR, exist_ok=True)

# Query parameters of /sub that are not override arguments
RESERVED_PARAMS = {'url', 'token', 'compact'}

# ==================== Config Management ====================

def default_config() -> dict:
    return {
        'auth': {'sub_token': ''},
        'arguments': OverrideArguments().model_dump(),
    }

def load_config() -> dict:
    """Load stored settings, filling in missing keys"""
    default = default_config()
    if not os.path.exists(CONFIG_FILE):
        return default
    try:
        with open(CONFIG_FILE, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Cannot read %s, using defaults: %s", CONFIG_FILE, e)
        return default
    if not isinstance(config, dict):
        return default
    for key in default:
        if not isinstance(config.get(key), dict):
            config[key] = default[key]
    for key, value in default['arguments'].items():
        config['arguments'].setdefault(key, value)
    return config

def save_config(config: dict):
    with open(CONFIG_FILE, 'w', encoding='utf-8') as f:
        json.dump(config, f, ensure_ascii=False, indent=2)

# ==================== Authentication ====================

def generate_token() -> str:
    return secrets.token_urlsafe(24)

def verify_token(token: Optional[str] = None, authorization: Optional[str] = Header(None)) -> bool:
    """Accept ?token= or 'Authorization: Bearer <token>' when a token is configured"""
    expected = load_config()['auth'].get('sub_token')
    if not expected:
        return True
    if authorization and authorization.startswith('Bearer '):
        authorization = authorization[len('Bearer '):]
    provided = token or authorization or ''
    if secrets.compare_digest(provided.encode('utf-8'), expected.encode('utf-8')):
        return True
    raise HTTPException(status_code=401, detail="Invalid token")

# ==================== Data Models ====================

class OverrideArguments(BaseModel):
    loadbalance: bool = False
    landing: bool = False
    ipv6: bool = False
    full: bool = False
    keepalive: bool = False
    fakeip: bool = False
    quic: bool = False
    threshold: int = 0

class OverrideRequest(BaseModel):
    proxies: List[Dict[str, Any]]
    arguments: Optional[Dict[str, Any]] = None

# ==================== Helpers ====================

def resolve_arguments(overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Stored default arguments updated with per-request ones"""
    args = dict(load_config()['arguments'])
    args.update(overrides or {})
    return args

def apply_override(source: dict, overrides: Optional[Dict[str, Any]]) -> dict:
    proxies = ProxyFilter.filter_proxies(source.get('proxies') or [])
    if not proxies:
        raise HTTPException(status_code=422, detail="No valid proxy nodes")
    source = dict(source, proxies=proxies)
    result = ConfigOverride.from_arguments(resolve_arguments(overrides)).apply(source)
    missing = find_missing_references(result)
    if missing:
        logger.error("Unresolved group references: %s", ', '.join(missing))
        raise HTTPException(status_code=500, detail=f"Unresolved references: {', '.join(missing)}")
    return result

def render(config: dict, compact: bool) -> str:
    return dump_config_compact(config) if compact else dump_config(config)

# ==================== Settings API ====================

@app.get("/api/arguments")
def get_arguments(_: bool = Depends(verify_token)):
    return load_config()['arguments']

@app.put("/api/arguments")
def update_arguments(data: OverrideArguments, _: bool = Depends(verify_token)):
    config = load_config()
    config['arguments'] = data.model_dump()
    save_config(config)
    return config['arguments']

@app.post("/api/auth/regenerate-token")
def regenerate_token(_: bool = Depends(verify_token)):
    config = load_config()
    config['auth']['sub_token'] = generate_token()
    save_config(config)
    return {"token": config['auth']['sub_token']}

# ==================== Override API ====================

@app.post("/api/override")
def override(data: OverrideRequest, _: bool = Depends(verify_token)):
    result = apply_override({'proxies': data.proxies}, data.arguments)
    return {"config": result, "missing": find_missing_references(result)}

@app.post("/api/override/file")
async def override_file(
    file: UploadFile = File(...),
    arguments: str = Form(default=""),
    compact: bool = Form(default=False),
    _: bool = Depends(verify_token),
):
    try:
        content = (await file.read()).decode('utf-8')
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="File is not UTF-8 text")
    source = SubscriptionParser.parse_content(content)
    if not source:
        raise HTTPException(status_code=400, detail="Unrecognized subscription format")
    result = apply_override(source, parse_arguments(arguments))
    return PlainTextResponse(render(result, compact), media_type='text/yaml; charset=utf-8')

@app.get("/sub")
def get_subscription(request: Request, url: str, compact: bool = False, _: bool = Depends(verify_token)):
    try:
        content, sub_info = fetch_subscription(url)
    except requests.RequestException as e:
        logger.warning("Upstream subscription failed: %s", e)
        raise HTTPException(status_code=502, detail=f"Upstream subscription failed: {e}")

    source = SubscriptionParser.parse_content(content)
    if not source:
        raise HTTPException(status_code=422, detail="Upstream returned no proxy nodes")

    overrides = {k: v for k, v in request.query_params.items() if k not in RESERVED_PARAMS}
    result = apply_override(source, overrides)
    return PlainTextResponse(
        render(result, compact),
        media_type='text/yaml; charset=utf-8',
        headers={
            "Content-Disposition": "attachment; filename=config.yaml",
            "subscription-userinfo": format_subscription_info(sub_info),
        }
    )

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    port = int(os.environ.get('PORT', 8666))
    uvicorn.run(app, host="0.0.0.0", port=port)
