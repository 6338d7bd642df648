import functools
import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from dashboard import render_dashboard
from email_sender import send_download_email
from errors import DeliveryError
from fulfillment import FulfillmentService, Mailer
from models import utcnow
from products_config import ProductCatalog
from settings import Settings, load_settings
from storage import DeliveryStore, SQLiteStore

log = logging.getLogger("ebook-delivery")

WEBHOOK_SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"


def _query_params(request: Request) -> Dict[str, Union[str, List[str]]]:
    """Query string as a mapping; repeated keys become lists."""
    params: Dict[str, Union[str, List[str]]] = {}
    for key, value in request.query_params.multi_items():
        if key not in params:
            params[key] = value
        elif isinstance(params[key], list):
            params[key].append(value)
        else:
            params[key] = [params[key], value]
    return params


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DeliveryStore] = None,
    catalog: Optional[ProductCatalog] = None,
    mailer: Optional[Mailer] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    settings = settings or load_settings()
    store = store or SQLiteStore(settings.database_path)
    catalog = catalog or ProductCatalog(settings.catalog_path)
    mailer = mailer or functools.partial(send_download_email, settings)
    service = FulfillmentService(settings, store, catalog, mailer, clock or utcnow)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        log.info("Ebook delivery app running at %s", settings.base_url)
        yield
        store.close()

    app = FastAPI(title="Ebook Delivery", lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service

    @app.exception_handler(DeliveryError)
    async def delivery_error_handler(_request: Request, exc: DeliveryError):
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    @app.get("/health")
    def health():
        return {"ok": True, "service": "Ebook Delivery"}

    @app.get("/")
    def dashboard(key: str = ""):
        if settings.admin_password and not hmac.compare_digest(
            key.encode("utf-8"), settings.admin_password.encode("utf-8")
        ):
            return PlainTextResponse("Unauthorized", status_code=401)
        data = service.dashboard_data()
        return HTMLResponse(render_dashboard(data["events"], data["orders"]))

    @app.post("/webhooks/orders_paid")
    async def orders_paid(request: Request):
        # verify against the raw bytes, never a re-serialized body
        payload = await request.body()
        signature = request.headers.get(WEBHOOK_SIGNATURE_HEADER)
        result = await run_in_threadpool(service.handle_orders_paid, payload, signature)

        if not result.accepted:
            log.warning("Webhook skipped for order %s: %s", result.order_id, result.note)
            return JSONResponse({"ok": True, "note": result.note})

        return JSONResponse({
            "ok": True,
            "order_id": result.order_id,
            "items": len(result.links),
            "email_sent": result.email_sent,
        })

    @app.get("/download/{token}")
    def download_with_token(token: str):
        deliverable = service.redeem_download(token)
        return FileResponse(deliverable.path, filename=deliverable.filename)

    @app.get("/proxy/regenerate")
    def regenerate(request: Request, background_tasks: BackgroundTasks):
        regenerated = service.regenerate(_query_params(request))
        background_tasks.add_task(service.deliver_regenerated, regenerated)
        return PlainTextResponse("A new download link has been emailed to you.")

    return app


settings = load_settings()

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
