from typing import Optional

from authlib.integrations.starlette_client import OAuth
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel
from starlette.middleware.sessions import SessionMiddleware

import suggest
from backend import AuthSession, PromptBackend, create_backend, describe_error
from config import APP_NAME, settings
from hub import GalleryCache, PromptHub, PromptHubError
from logger import get_logger
from prompt_utils import PromptDraft, SortKey, extract_variables, render_variable_preview
from ui import render_gallery_page, render_login_page

logger = get_logger(__name__)

app = FastAPI(title=f"{APP_NAME} API")

app.add_middleware(SessionMiddleware, secret_key=settings.SESSION_SECRET)

oauth = OAuth()
oauth.register(
    name='oidc',
    server_metadata_url=settings.OIDC_DISCOVERY_URL,
    client_id=settings.OIDC_CLIENT_ID,
    client_secret=settings.OIDC_CLIENT_SECRET,
    client_kwargs={'scope': 'openid email profile'}
)

gallery_cache = GalleryCache()

FAVICON_SVG ="""<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 100 100"><text y=".9em" font-size="90">🎺</text></svg>"""


class TextPayload(BaseModel):
    content: str = ""


@app.exception_handler(PromptHubError)
async def prompt_hub_error_handler(request: Request, exc: PromptHubError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def is_company_email(email: str) -> bool:
    return email.strip().lower().endswith(f"@{settings.COMPANY_DOMAIN}")


def session_user(request: Request) -> Optional[AuthSession]:
    return AuthSession.from_dict(request.session.get('user'))


def get_backend(request: Request):
    """Backend client for this request, restored to the signed-in user and tied to the session cookie."""
    backend = create_backend(settings)
    try:
        yield bind_session(request, backend)
    finally:
        backend.close()


def bind_session(request: Request, backend: PromptBackend) -> PromptBackend:
    user = session_user(request)
    if user:
        backend.restore(user)

    def on_auth_change(session: Optional[AuthSession]):
        if session:
            request.session['user'] = session.to_dict()
            logger.info(f"Signed in: {session.email} via {session.provider}")
        else:
            request.session.pop('user', None)
            logger.info("Signed out")

    backend.auth.on_change(on_auth_change)
    return backend


def get_hub(request: Request, backend: PromptBackend = Depends(get_backend)) -> PromptHub:
    user = session_user(request)
    if not user:
        raise PromptHubError("Please sign in first.", status_code=401)
    return PromptHub(backend, user, gallery_cache)


def domain_error() -> str:
    return f"Access is restricted to @{settings.COMPANY_DOMAIN} users."


# --- AUTH ROUTES ---
@app.get('/login')
async def login(request: Request):
    if settings.AUTH_MODE == "email":
        return RedirectResponse('/')
    redirect_uri = request.url_for('auth_callback')
    # hd only pre-selects the account; the domain is checked again on the callback
    return await oauth.oidc.authorize_redirect(request, str(redirect_uri), hd=settings.COMPANY_DOMAIN)


@app.get('/auth')
async def auth_callback(request: Request, backend: PromptBackend = Depends(get_backend)):
    token = await oauth.oidc.authorize_access_token(request)
    user = token.get('userinfo') or {}
    email = str(user.get('email') or '')
    if not email or not is_company_email(email) or user.get('email_verified') is False:
        logger.warning(f"Rejected OAuth sign-in for '{email}'")
        return HTMLResponse(render_login_page(settings.AUTH_MODE, settings.COMPANY_DOMAIN, domain_error()),
                            status_code=403)

    try:
        backend.sign_in_with_identity(email.lower(), str(user.get('name') or ''))
    except Exception as e:
        logger.error(f"OAuth sign-in failed for {email}: {e}")
        message = describe_error(e, "Google sign-in failed.")
        return HTMLResponse(render_login_page(settings.AUTH_MODE, settings.COMPANY_DOMAIN, message), status_code=502)
    return RedirectResponse('/')


@app.post('/login/email')
async def login_email(request: Request, email: str = Form(""), password: str = Form(""),
                      backend: PromptBackend = Depends(get_backend)):
    def _fail(message: str, status_code: int):
        return HTMLResponse(render_login_page(settings.AUTH_MODE, settings.COMPANY_DOMAIN, message),
                            status_code=status_code)

    email = email.strip()
    if not email or not password.strip():
        return _fail("Email and password are required.", 400)
    if not is_company_email(email):
        return _fail(domain_error(), 403)

    try:
        backend.sign_in_with_password(email, password)
    except Exception as e:
        logger.warning(f"Email sign-in failed for {email}: {e}")
        return _fail(describe_error(e, "Email sign-in failed."), 401)
    return RedirectResponse('/', status_code=303)


@app.get('/logout')
async def logout(request: Request, backend: PromptBackend = Depends(get_backend)):
    backend.sign_out()
    request.session.pop('user', None)
    return RedirectResponse('/')


# --- API ROUTES ---
@app.get("/api/prompts")
async def get_prompts(q: str = "", sort: SortKey = SortKey.NEWEST, refresh: bool = False,
                      hub: PromptHub = Depends(get_hub)):
    state = await hub.visible(q, sort, refresh)
    return {"prompts": state.prompts, "warning": state.warning}


@app.post("/api/prompts")
async def add_prompt(draft: PromptDraft, hub: PromptHub = Depends(get_hub)):
    draft.id = None
    return await hub.submit_prompt(draft)


@app.put("/api/prompts/{prompt_id}")
async def edit_prompt(prompt_id: str, draft: PromptDraft, hub: PromptHub = Depends(get_hub)):
    draft.id = prompt_id
    return await hub.submit_prompt(draft)


@app.delete("/api/prompts/{prompt_id}")
async def delete_prompt(prompt_id: str, hub: PromptHub = Depends(get_hub)):
    await hub.delete_prompt(prompt_id)
    return {"status": "deleted"}


@app.get("/api/prompts/{prompt_id}/draft")
async def get_edit_draft(prompt_id: str, hub: PromptHub = Depends(get_hub)):
    return await hub.edit(prompt_id)


@app.post("/api/prompts/{prompt_id}/noise")
async def noise_prompt(prompt_id: str, hub: PromptHub = Depends(get_hub)):
    added = await hub.upvote(prompt_id)
    return {"status": "success", "added": added}


@app.post("/api/prompts/{prompt_id}/echo")
async def echo_prompt(prompt_id: str, hub: PromptHub = Depends(get_hub)):
    return await hub.echo(prompt_id)


@app.post("/api/variables")
async def detect_variables(payload: TextPayload):
    return {
        "variables": extract_variables(payload.content),
        "preview_html": render_variable_preview(payload.content),
    }


@app.post("/api/suggest/title")
def suggest_title(request: Request, payload: TextPayload):
    if not session_user(request): raise HTTPException(status_code=401, detail="Please sign in first.")
    try:
        return {"suggestion": suggest.suggest_title(payload.content)}
    except Exception as e:
        logger.error(f"Title suggestion failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/suggest/category")
def suggest_category(request: Request, payload: TextPayload):
    if not session_user(request): raise HTTPException(status_code=401, detail="Please sign in first.")
    try:
        return {"suggestion": suggest.suggest_category(payload.content)}
    except Exception as e:
        logger.error(f"Category suggestion failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


# --- FRONTEND ---
@app.get("/favicon.ico")
def favicon_redirect():
    return RedirectResponse('/favicon.svg', status_code=308)


@app.get("/favicon.svg")
def favicon():
    return Response(content=FAVICON_SVG, media_type="image/svg+xml")


@app.get("/", response_class=HTMLResponse)
def get_html(request: Request):
    user = session_user(request)
    if not user:
        return render_login_page(settings.AUTH_MODE, settings.COMPANY_DOMAIN)
    return render_gallery_page(user.email or user.user_id, user.user_id)
