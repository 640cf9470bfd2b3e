"""
HTTP API.

Routes are thin: authenticate, validate the body, call one domain
operation inside the request meter, and serialize the result. Domain
errors map to status codes in one place.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from bot_credit_guard.config.loader import Settings, load_settings
from bot_credit_guard.core import errors
from bot_credit_guard.core.ledger import utc_now
from bot_credit_guard.core.services import ServiceContainer
from bot_credit_guard.core.usage import SUMMARY_DAYS
from .auth import SANDBOX_HEADER, Caller, SandboxSession, authenticate, is_sandbox
from .schemas import (
    CreateBotRequest,
    ErrorResponse,
    PurchaseRequest,
    TierChangeRequest,
    WebhookRegistrationRequest,
)

logger = logging.getLogger(__name__)

STATUS_CODES = {
    errors.AccountNotFound: 404,
    errors.InvalidApiKey: 401,
    errors.InsufficientCredits: 402,
    errors.QuotaExceeded: 429,
    errors.InvalidWebhookUrl: 400,
    errors.InvalidEventType: 400,
    errors.SubscriptionNotFound: 404,
    errors.InvoiceNotFound: 404,
    errors.WebhookDeliveryFailed: 502,
    errors.ValidationError: 400,
    errors.PersistenceError: 500,
}


def status_for(error: errors.BotApiError) -> int:
    for error_type, status in STATUS_CODES.items():
        if isinstance(error, error_type):
            return status
    return 500


def create_app(settings: Optional[Settings] = None, services: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the application around one service container.

    The container is started when the app starts serving and shut down
    (queued webhooks delivered, workers stopped) when it stops.
    """
    settings = settings or (services.settings if services else load_settings())
    services = services or ServiceContainer.build(settings)
    sandbox = SandboxSession(settings.sandbox)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.start()
        try:
            yield
        finally:
            services.shutdown()

    app = FastAPI(title="Bot Credit Guard", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(errors.BotApiError)
    async def handle_domain_error(request: Request, exc: errors.BotApiError):
        status = status_for(exc)
        headers = {}
        if isinstance(exc, errors.QuotaExceeded):
            headers["Retry-After"] = str(exc.retry_after(utc_now()))
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
            message = "Internal server error" if isinstance(exc, errors.PersistenceError) else exc.message
        else:
            message = exc.message
        body = ErrorResponse(error=exc.code, message=message, details=exc.details)
        return JSONResponse(status_code=status, content=body.model_dump(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        problems = [
            {"field": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg")}
            for e in exc.errors()
        ]
        body = ErrorResponse(
            error=errors.ValidationError.code,
            message="Invalid request",
            details={"errors": problems},
        )
        return JSONResponse(status_code=400, content=body.model_dump())

    @app.middleware("http")
    async def count_requests(request: Request, call_next):
        response = await call_next(request)
        route = request.scope.get("route")
        path = getattr(route, "path", "unmatched")
        services.metrics.http_requests.labels(
            method=request.method, route=path, status_code=str(response.status_code)
        ).inc()
        if is_sandbox(request.headers.get(SANDBOX_HEADER)):
            response.headers[SANDBOX_HEADER] = request.headers[SANDBOX_HEADER]
        return response

    def current_caller(
        x_api_key: Optional[str] = Header(None),
        x_bot_id: Optional[str] = Header(None),
        x_sandbox_mode: Optional[str] = Header(None),
    ) -> Caller:
        return authenticate(services.accounts, x_api_key, x_bot_id, x_sandbox_mode)

    # Credits

    @app.post("/purchase-credits")
    def purchase_credits(body: PurchaseRequest, caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            return sandbox.purchase(body.amount, settings.credits.price_per_credit, utc_now())
        result = services.purchases.purchase(caller.bot_id, body.amount)
        return {
            "success": True,
            "invoice": result.invoice.to_dict(),
            "creditsRemaining": result.balance.credits_remaining,
        }

    @app.get("/invoices")
    def list_invoices(caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            return {"invoices": []}
        return {"invoices": [i.to_dict() for i in services.purchases.list_invoices(caller.bot_id)]}

    @app.get("/invoices/{invoice_id}")
    def get_invoice(invoice_id: str, caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            raise errors.InvoiceNotFound(invoice_id)
        return services.purchases.get_invoice(caller.bot_id, invoice_id).to_dict()

    # Usage

    @app.get("/usage")
    def get_usage(caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            now = utc_now()
            return _usage_payload(sandbox.account(now), sandbox.balance(now), sandbox.usage(now), None, [])
        with services.meter.track(caller.bot_id, "usage"):
            records = services.usage.history(caller.bot_id, SUMMARY_DAYS)
            summary = services.usage.summary(caller.bot_id, SUMMARY_DAYS)
        # Report balance and today's counters after this request's own charge and record
        balance = services.ledger.get_balance(caller.bot_id)
        today = services.usage.today(caller.bot_id)
        return _usage_payload(caller.account, balance, today, summary, records)

    @app.get("/usage/history")
    def get_usage_history(
        days: int = Query(7, ge=1, le=365),
        caller: Caller = Depends(current_caller),
    ):
        if caller.sandbox:
            return {"success": True, "days": days, "history": []}
        with services.meter.track(caller.bot_id, "usage_history"):
            history = services.usage.history(caller.bot_id, days)
        return {"success": True, "days": days, "history": [r.to_dict() for r in history]}

    @app.get("/usage/endpoints")
    def get_endpoint_usage(caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            return {"success": True, "endpointUsage": {}}
        with services.meter.track(caller.bot_id, "usage_endpoints"):
            totals = services.usage.endpoint_totals(caller.bot_id)
        return {"success": True, "endpointUsage": totals}

    # Webhooks

    @app.post("/webhooks", status_code=201)
    def register_webhook(body: WebhookRegistrationRequest, caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            webhook = sandbox.register_webhook(body.url, body.event_type, body.description, utc_now())
            return {"success": True, "webhook": webhook}
        with services.meter.track(caller.bot_id, "webhooks_register"):
            subscription = services.webhooks.register(
                caller.bot_id, body.url, body.event_type, body.description
            )
        return {"success": True, "webhook": subscription.to_dict()}

    @app.get("/webhooks")
    def list_webhooks(caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            return {"success": True, "webhooks": []}
        with services.meter.track(caller.bot_id, "webhooks_list"):
            subscriptions = services.webhooks.list(caller.bot_id)
        return {"success": True, "webhooks": [s.to_dict() for s in subscriptions]}

    @app.delete("/webhooks/{webhook_id}")
    def delete_webhook(webhook_id: str, caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            return {"success": True}
        with services.meter.track(caller.bot_id, "webhooks_delete"):
            services.webhooks.delete(caller.bot_id, webhook_id)
        return {"success": True}

    @app.post("/webhooks/{webhook_id}/test")
    def test_webhook(webhook_id: str, caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            return {"success": True, "result": sandbox.test_webhook(webhook_id)}
        with services.meter.track(caller.bot_id, "webhooks_test"):
            result = services.dispatcher.test(caller.bot_id, webhook_id)
        if not result.success:
            raise errors.WebhookDeliveryFailed(webhook_id, result.error or "no response")
        return {"success": True, "result": result.to_dict()}

    # Bot self-service

    @app.post("/bot", status_code=201)
    def create_bot(body: CreateBotRequest, x_sandbox_mode: Optional[str] = Header(None)):
        """Register a bot. The plaintext API key appears in this response only."""
        if is_sandbox(x_sandbox_mode):
            return {"success": True, "bot": sandbox.create_bot(body.name, body.tier, utc_now())}
        credentials = services.accounts.create_account(body.name, body.tier)
        account = credentials.account
        return {
            "success": True,
            "bot": {
                "id": account.id,
                "name": account.name,
                "tier": account.tier.value,
                "apiKey": credentials.api_key,
                "createdAt": account.created_at.isoformat(),
            },
        }

    @app.delete("/bot")
    def deactivate_bot(caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            return {"success": True}
        services.accounts.deactivate(caller.bot_id)
        return {"success": True}

    @app.get("/bot")
    def get_bot(caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            now = utc_now()
            return {**sandbox.account(now).to_dict(), "balance": sandbox.balance(now).to_dict()}
        with services.meter.track(caller.bot_id, "bot_info"):
            account = services.accounts.require(caller.bot_id)
        balance = services.ledger.get_balance(caller.bot_id)
        return {**account.to_dict(), "balance": balance.to_dict()}

    @app.post("/bot/rotate-api-key")
    def rotate_api_key(caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            return {"success": True, "apiKey": "bot_sandbox"}
        credentials = services.accounts.rotate_key(caller.bot_id)
        return {"success": True, "apiKey": credentials.api_key}

    @app.put("/bot/tier")
    def change_tier(body: TierChangeRequest, caller: Caller = Depends(current_caller)):
        if caller.sandbox:
            return {"success": True, "tier": body.tier}
        account = services.accounts.set_tier(caller.bot_id, body.tier)
        balance = services.ledger.get_balance(caller.bot_id)
        return {"success": True, "tier": account.tier.value, "dailyLimit": balance.daily_limit}

    # Operations

    @app.get("/metrics")
    def metrics():
        return Response(content=services.metrics.render(), media_type=services.metrics.content_type)

    return app


def _usage_payload(account, balance, today, summary, records):
    return {
        "botId": balance.bot_id,
        "name": account.name if account else None,
        "tier": account.tier.value if account else None,
        **balance.to_dict(),
        "today": today.to_dict(),
        "last30Days": summary.to_dict() if summary else None,
        "dailyUsage": [r.to_dict() for r in records],
    }
