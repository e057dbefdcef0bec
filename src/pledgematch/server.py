"""PledgeMatch reconciliation service.

FastAPI application exposing:
- Payment-provider webhook intake
- Manual matching runs (and dry runs)
- Per-project matching donor totals
"""

from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request

from src.config import config, validate_config_for_service
from src.database import Database, db
from src.logging_utils import CorrelationIdContext, get_logger, setup_logging
from src.models import (
    MatchingRunRequest,
    MatchingRunResponse,
    WebhookEnvelope,
    ensure_utc,
)
from src.pledgematch.decryption import PayloadDecryptor
from src.pledgematch.directory import MatchingDonorDirectory, create_directory
from src.pledgematch.errors import WebhookRejected
from src.pledgematch.matching import MatchingEngine
from src.pledgematch.trigger import MatchingTrigger
from src.pledgematch.webhooks import WebhookReconciler

# Validate configuration
validate_config_for_service("webhook")

# Setup logging
setup_logging(
    config.log_level,
    config.log_format,
    secrets=(
        config.webhook_aes_key.get_secret_value(),
        config.webhook_aes_iv.get_secret_value(),
        config.payload_api_token.get_secret_value(),
    ),
)
logger = get_logger(__name__)

INVALID_MIN_DATE = "Invalid minDate format. Use ISO 8601 format (e.g., 2025-01-01T00:00:00Z)"


def parse_min_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 minDate; naive values are taken as UTC.

    Raises:
        HTTPException: 400 if the value is not a valid date.
    """
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.strip()))
    except ValueError:
        raise HTTPException(status_code=400, detail=INVALID_MIN_DATE)


def create_app(
    database: Optional[Database] = None,
    directory: Optional[MatchingDonorDirectory] = None,
    decryptor: Optional[PayloadDecryptor] = None,
    engine: Optional[MatchingEngine] = None,
    trigger: Optional[MatchingTrigger] = None,
) -> FastAPI:
    """Build the service application.

    Args:
        database: Store to use. Defaults to the global database.
        directory: Matching donor directory. Defaults to the configured source.
        decryptor: Webhook payload decryptor. Defaults to the configured key/IV.
        engine: Matching engine. Defaults to one over ``database`` and ``directory``.
        trigger: Post-webhook matching trigger. Defaults to one over the engine.
    """
    database = database or db
    engine = engine or MatchingEngine(database, directory or create_directory())
    reconciler = WebhookReconciler(database, decryptor)
    trigger = trigger or MatchingTrigger(engine)

    app = FastAPI(
        title="PledgeMatch",
        description="Donation reconciliation and matching service",
    )
    app.state.engine = engine
    app.state.trigger = trigger

    @app.on_event("startup")
    async def startup():
        """Initialize database and start the matching trigger."""
        logger.info("Initializing PledgeMatch service...")
        await database.initialize()
        await trigger.start()
        logger.info("PledgeMatch service initialized")

    @app.on_event("shutdown")
    async def shutdown():
        await trigger.stop()

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint with matching trigger counters."""
        return {
            "status": "ok",
            "service": "pledgematch",
            "matching_trigger": {
                "running": trigger.is_running,
                **trigger.stats.model_dump(mode="json"),
            },
        }

    @app.post("/webhooks/tgb")
    async def receive_tgb_webhook(
        request: Request,
        x_correlation_id: str = Header(None, alias="X-Correlation-Id"),
    ):
        """Receive a payment-provider donation event.

        Responds 200 once the donation update is stored, 400 for deliveries
        that are refused without touching state, and 500 when a known event
        could not be applied (the provider retries).

        Args:
            request: FastAPI request object.
            x_correlation_id: Optional correlation ID.

        Returns:
            Confirmation message and what the delivery did.
        """
        with CorrelationIdContext(x_correlation_id, prefix="wh"):
            try:
                envelope = WebhookEnvelope.model_validate(await request.json())
            except ValueError as e:
                logger.error(f"Invalid webhook payload: {e}")
                raise HTTPException(status_code=400, detail="Invalid webhook payload")

            try:
                outcome = await reconciler.process(envelope)
            except WebhookRejected as e:
                raise HTTPException(status_code=400, detail=e.detail)
            except Exception as e:
                logger.error(f"Error processing webhook: {e}", exc_info=True)
                raise HTTPException(status_code=500, detail="Internal Server Error")

            # Not awaited; the response does not depend on matching
            trigger.request(f"{outcome.event_type}:{outcome.status}")

            return {"message": "Webhook processed successfully", "outcome": outcome.status}

    async def _run_matching(dry_run: bool, min_date: Optional[datetime]) -> dict:
        logger.info(f"Process matching starting{' (dry run)' if dry_run else ''}")
        try:
            result = await engine.run(dry_run=dry_run, min_date=min_date)
        except Exception as e:
            logger.error(f"Matching process failed: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to process matching: {e}")
        return MatchingRunResponse.from_result(result).model_dump(by_alias=True, exclude_none=True)

    @app.post("/matching/process")
    async def process_matching(request: Request):
        """Run matching now. Body (optional): ``{"dryRun": bool, "minDate": str}``."""
        with CorrelationIdContext(request.headers.get("X-Correlation-Id"), prefix="match"):
            try:
                data = await request.json()
            except ValueError:
                data = {}
            try:
                body = MatchingRunRequest.model_validate(data or {})
            except ValueError:
                raise HTTPException(status_code=400, detail="Invalid request body")

            return await _run_matching(body.dry_run, parse_min_date(body.min_date))

    @app.get("/matching/process")
    async def preview_matching(
        dry_run: Optional[str] = Query(None, alias="dryRun"),
        min_date: Optional[str] = Query(None, alias="minDate"),
    ):
        """Matching via GET; a dry run unless ``dryRun=false``."""
        with CorrelationIdContext(prefix="match"):
            return await _run_matching(dry_run != "false", parse_min_date(min_date))

    @app.get("/matching/donors-by-project")
    async def donors_by_project(slug: Optional[str] = Query(None)):
        """Matching donors who have matched donations for a project."""
        if not slug or not slug.strip():
            raise HTTPException(status_code=400, detail="Project slug is required")

        try:
            donors = await engine.donors_for_project(slug)
        except Exception as e:
            logger.error(f"Failed to fetch matching donors for {slug}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="Failed to fetch matching donors")

        return {
            "slug": slug,
            "donors": [donor.model_dump(by_alias=True) for donor in donors],
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting PledgeMatch service on {config.service_host}:{config.service_port}")
    uvicorn.run(
        app,
        host=config.service_host,
        port=config.service_port,
        log_level=config.log_level.lower(),
    )
