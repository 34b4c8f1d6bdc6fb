import logging
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from checkout import database, messaging
from checkout.callbacks import CallbackIngestor
from checkout.config import Settings, configure_logging
from checkout.dispatch import InlineDispatcher, QueueDispatcher
from checkout.errors import ConfigurationError, GatewayAuthError, GatewayRejected, InvalidPhoneNumber
from checkout.fulfillment import FulfillmentOrchestrator, build_orchestrator
from checkout.gateway import MpesaClient
from checkout.schemas import CallbackAck, InitiateRequest, InitiateResponse, StatusResponse
from checkout.status import StatusQueryService
from checkout.store import CorrelationStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: CorrelationStore
    gateway: MpesaClient
    ingestor: CallbackIngestor
    status: StatusQueryService
    orchestrator: FulfillmentOrchestrator
    dispatcher: object


def build_services(settings: Settings, store: CorrelationStore) -> Services:
    orchestrator = build_orchestrator(settings)
    if settings.fulfillment_mode == "queue":
        dispatcher = QueueDispatcher()
    else:
        dispatcher = InlineDispatcher(store, orchestrator)
    return Services(
        store=store,
        gateway=MpesaClient(settings.gateway, store, country_code=settings.country_code),
        ingestor=CallbackIngestor(store, dispatcher),
        status=StatusQueryService(store),
        orchestrator=orchestrator,
        dispatcher=dispatcher,
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ConfigurationError("Checkout services are not initialised")
    return services


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Checkout Service")
    app.state.settings = settings
    app.state.services = services

    @app.on_event("startup")
    async def startup_event():
        if app.state.services is not None:
            return
        if app.state.settings is None:
            app.state.settings = Settings.from_env()
        current = app.state.settings
        configure_logging(current.log_level)
        database.configure_database(current.database_url)
        await database.init_db()
        if current.fulfillment_mode == "queue":
            await messaging.setup_rabbitmq(current.rabbitmq_url)
        app.state.services = build_services(current, CorrelationStore(database.SessionLocal))
        logger.info("Checkout service started (fulfillment mode: %s)", current.fulfillment_mode)

    @app.on_event("shutdown")
    async def shutdown_event():
        services = app.state.services
        if services is not None:
            await services.dispatcher.drain()
            await services.gateway.aclose()
            await services.orchestrator.aclose()
        await messaging.close_rabbitmq()
        await database.dispose_db()

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.error("Configuration error: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Service misconfigured"})

    @app.post("/api/payments/stkpush", response_model=InitiateResponse)
    async def initiate_payment(payload: InitiateRequest, services: Services = Depends(get_services)):
        brand_name = app.state.settings.brand_name if app.state.settings is not None else "Checkout"
        try:
            result = await services.gateway.initiate(
                phone=payload.phone,
                amount=payload.amount,
                account_reference=payload.reference_or(brand_name),
                transaction_desc=payload.transaction_desc,
                order=payload.order.model_dump(mode="json") if payload.order else None,
            )
        except InvalidPhoneNumber as e:
            raise HTTPException(status_code=400, detail=str(e))
        except GatewayAuthError as e:
            logger.error("Gateway authentication failed: %s", e)
            raise HTTPException(status_code=502, detail="Payment service unavailable, please try again")
        except GatewayRejected as e:
            logger.warning("STK push rejected: %s", e)
            raise HTTPException(status_code=502, detail="Payment request failed, please try again")
        return InitiateResponse(
            correlation_key=result.correlation_key,
            merchant_request_id=result.merchant_request_id,
            customer_message=result.customer_message,
        )

    @app.post("/api/payments/callback", response_model=CallbackAck)
    async def payment_callback(request: Request, services: Services = Depends(get_services)):
        # Always 200: anything else makes the gateway redeliver.
        await services.ingestor.ingest(await request.body())
        return CallbackAck()

    @app.get("/api/payments/status", response_model=StatusResponse)
    async def payment_status(
        correlation_key: Optional[str] = Query(None, alias="correlationKey"),
        checkout_request_id: Optional[str] = Query(None, alias="checkoutRequestID"),
        services: Services = Depends(get_services),
    ):
        key = correlation_key or checkout_request_id
        if not key:
            raise HTTPException(status_code=400, detail="Missing correlationKey")
        state = await services.status.query(key)
        return StatusResponse(status=state.value.lower())

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
