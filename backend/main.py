import logging
from typing import Any, List, Optional

from dotenv import load_dotenv

load_dotenv(".env.local"); load_dotenv()  # also loads .env if present

from fastapi import Depends, FastAPI, Header, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from pydantic import BaseModel, ConfigDict, ValidationError  # noqa: E402

from form_fulfillment import FulfillmentError, FulfillmentService  # noqa: E402
from form_fulfillment.tasks import get_service, process_batch, settings  # noqa: E402

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("webhook")

app = FastAPI(title="Application Form Webhook")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    records: List[Any]


def envelope(status_code: int, success: bool, status: str, message: str, **extra) -> JSONResponse:
    body = {"success": success, "status": status, "message": message}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


def unauthorized() -> JSONResponse:
    return envelope(401, False, "Unauthorized", "Invalid API key. Please provide a valid Bearer token.")


def bad_request(message: str) -> JSONResponse:
    return envelope(400, False, "Bad Request", message)


def is_authorized(service: FulfillmentService, authorization: Optional[str]) -> bool:
    api_key = service.settings.webhook_api_key
    if not api_key:
        logger.error("WEBHOOK_API_KEY is not configured; rejecting request")
        return False
    return authorization == f"Bearer {api_key}"


@app.get("/webhook")
def webhook_ready():
    return envelope(200, True, "Webhook Ready", "Webhook endpoint is live! Send a POST request with data.")


@app.post("/webhook")
async def webhook_receive(
    request: Request,
    wait: bool = False,
    authorization: Optional[str] = Header(None),
    idempotency_key: Optional[str] = Header(None),
    service: FulfillmentService = Depends(get_service),
):
    if not is_authorized(service, authorization):
        return unauthorized()

    try:
        payload = await request.json()
    except ValueError:
        payload = None

    if not isinstance(payload, dict) or not payload:
        return bad_request("Empty webhook payload. Please provide valid data.")
    try:
        parsed = WebhookPayload.model_validate(payload)
    except ValidationError:
        parsed = None
    if parsed is None or not parsed.records:
        return bad_request("Webhook payload must include a non-empty 'records' list.")

    try:
        report, created = service.submit(payload, idempotency_key)

        if wait:
            if created or report.status == "queued":
                report = service.run_batch(report.batch_id)
            return envelope(
                200, True, "Success", "Webhook received and processed successfully.",
                batchId=report.batch_id,
                duplicate=not created,
                processedData=report.to_dict(),
            )

        if created or report.status == "queued":
            # A repeat of a still-queued batch re-enqueues it; the batch claim
            # keeps the second task from doing any work twice.
            process_batch.delay(report.batch_id)
        if created:
            message = "Webhook received; records are being processed."
        else:
            message = "Duplicate delivery; this batch was already accepted."
        return envelope(
            202, True, "Accepted", message,
            batchId=report.batch_id,
            batchStatus=report.status,
            duplicate=not created,
        )
    except Exception as exc:
        logger.error("Error processing webhook: %s", exc, exc_info=True)
        return envelope(
            500, False, "Internal Server Error",
            "An unexpected error occurred while processing the webhook.",
            errorDetails=str(exc),
        )


@app.get("/webhook/batches/{batch_id}")
def webhook_batch_status(
    batch_id: str,
    authorization: Optional[str] = Header(None),
    service: FulfillmentService = Depends(get_service),
):
    if not is_authorized(service, authorization):
        return unauthorized()
    try:
        report = service.get_batch(batch_id)
    except FulfillmentError as exc:
        return envelope(404, False, "Not Found", str(exc))
    return envelope(200, True, report.status, f"Batch {batch_id} is {report.status}.", batch=report.to_dict())
