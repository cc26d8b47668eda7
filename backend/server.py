import logging
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel, Field, ValidationError

from github_connect.broker import AuthorizationBroker
from github_connect.broker_client import BrokerClient
from github_connect.callback import CallbackAction, CallbackController
from github_connect.config import BrokerSettings, ClientSettings
from github_connect.errors import GitHubConnectError
from github_connect.models import BrokerRequest
from github_connect.notifications import ToastLog
from github_connect.orchestrator import CLONE_PROTOCOLS, PopupOrchestrator
from github_connect.storage import ConnectionStore, JsonFileStorage, MemoryStorage, SessionStore
from github_connect.windows import BrowserPopupLauncher, Window

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
}

CALLBACK_PAGE = """<!doctype html>
<html>
  <head><title>Connecting to GitHub...</title></head>
  <body>
    <h1>Connecting to GitHub...</h1>
    <p>Authorization received. You can close this window.</p>
  </body>
</html>
"""

app = FastAPI(title='github-connect')
app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

# server side: the broker is the only holder of the client secret
BROKER = AuthorizationBroker(BrokerSettings.from_env())

# client side: the "page" that starts the connection and its popups
CLIENT_SETTINGS = ClientSettings.from_env()
MAIN_WINDOW = Window(origin=CLIENT_SETTINGS.origin, url='/')
LAUNCHER = BrowserPopupLauncher(MAIN_WINDOW)
SESSION = SessionStore(MemoryStorage())
TOASTS = ToastLog()
ORCHESTRATOR = PopupOrchestrator(
    CLIENT_SETTINGS,
    MAIN_WINDOW,
    LAUNCHER,
    SESSION,
    ConnectionStore(JsonFileStorage(CLIENT_SETTINGS.connection_store)),
    BrokerClient(CLIENT_SETTINGS.resolved_broker_url),
    TOASTS,
)
ORCHESTRATOR.hydrate()


def _connection_status() -> Dict:
    # never echo the access token back to the page
    conn = ORCHESTRATOR.connection
    outcome = ORCHESTRATOR.outcome
    return {
        'connected': conn is not None,
        'connecting': ORCHESTRATOR.is_connecting,
        'outcome': outcome.value if outcome else None,
        'username': conn.username if conn else None,
        'selected_repository': conn.selected_repository.full_name if conn and conn.selected_repository else None,
        'repositories': [
            r.model_dump(include={'id', 'name', 'full_name', 'html_url', 'private', 'default_branch'})
            for r in (conn.repositories if conn else [])
        ],
        'toasts': [t.model_dump() for t in TOASTS.toasts[-5:]],
    }


# Authorization broker

@app.options('/functions/github-oauth')
async def github_oauth_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)


@app.post('/functions/github-oauth')
async def github_oauth(request: Request):
    """
    Body: {"action"?: "get_client_id", "code"?: str, "installation_id"?: str}
    Success -> 200 payload; any failure -> 400 {"error": str}.
    """
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse({'error': 'Request body must be JSON.'}, status_code=400, headers=CORS_HEADERS)

    try:
        if not isinstance(payload, dict):
            raise GitHubConnectError('Request body must be a JSON object.')
        data = await BROKER.handle(BrokerRequest.model_validate(payload))
    except GitHubConnectError as e:
        logger.error("Error in github-oauth function: %s", e)
        message = str(e) or 'An unknown error occurred'
        return JSONResponse({'error': message}, status_code=400, headers=CORS_HEADERS)
    except ValidationError as e:
        logger.error("Invalid github-oauth request body: %s", e)
        return JSONResponse({'error': 'Invalid request body.'}, status_code=400, headers=CORS_HEADERS)
    except Exception:
        logger.exception("Unexpected error in github-oauth function")
        return JSONResponse({'error': 'An unknown error occurred'}, status_code=400, headers=CORS_HEADERS)

    return JSONResponse(data, headers=CORS_HEADERS)


# Callback page (loaded inside the popup)

@app.get('/github/callback')
async def github_callback(request: Request):
    # a direct visit has no popup behind it, so no opener either
    window = LAUNCHER.current_popup() or Window(origin=CLIENT_SETTINGS.origin, url=str(request.url))
    search = f"?{request.url.query}" if request.url.query else ''
    action = CallbackController(window, SESSION).handle(search)
    if action == CallbackAction.REDIRECT_HOME:
        return RedirectResponse('/', status_code=302)
    return HTMLResponse(CALLBACK_PAGE)


@app.get('/')
async def home():
    return JSONResponse({'app': 'github-connect', **_connection_status()})


# IDE connection API

class RepositorySelection(BaseModel):
    full_name: str = Field(..., description="owner/name of an already fetched repository")


@app.post('/api/github/connect')
async def connect_github():
    outcome = await ORCHESTRATOR.initiate_connection()
    return JSONResponse({
        'status': outcome.value if outcome else 'pending',
        'toast': TOASTS.last.model_dump() if outcome and TOASTS.last else None,
    })


@app.get('/api/github/connection')
async def get_connection():
    return JSONResponse(_connection_status())


@app.delete('/api/github/connection')
async def disconnect_github():
    ORCHESTRATOR.disconnect()
    return JSONResponse(_connection_status())


@app.put('/api/github/connection/repository')
async def select_repository(body: RepositorySelection):
    if not ORCHESTRATOR.is_connected:
        raise HTTPException(status_code=409, detail='GitHub is not connected.')
    if not ORCHESTRATOR.switch_repository(body.full_name):
        raise HTTPException(status_code=404, detail=f'Unknown repository: {body.full_name}')
    return JSONResponse(_connection_status())


@app.get('/api/github/clone-url')
async def clone_url(protocol: Optional[str] = 'HTTPS'):
    if protocol not in CLONE_PROTOCOLS:
        raise HTTPException(status_code=400, detail=f'Unsupported protocol: {protocol}')
    return {'protocol': protocol, 'url': ORCHESTRATOR.clone_url(protocol)}
