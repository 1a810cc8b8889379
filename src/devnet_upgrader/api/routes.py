"""API route handlers for upgrade endpoints.

HTTP status is always 200; the outcome is in the body's `code` field
(200 ok, 400 invalid input, 404 unknown devnet, 409 conflict, 500 corrupt
state).
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from devnet_upgrader.api.models import CancelRequest, StartUpgradeRequest, UpgradeSummary
from devnet_upgrader.errors import (
    ActiveUpgradeExists,
    CorruptStateError,
    UpgradeInProgress,
    UpgradeNotFound,
)
from devnet_upgrader.models.record import UpgradeRecord
from devnet_upgrader.models.spec import DevnetRef, UpgradeSpec
from devnet_upgrader.services.provider import Services

router = APIRouter(prefix="/api/v1.0/upgrades")

logger = logging.getLogger("devnet_upgrader.api")


def _respond(code: int = 200, msg: str = "success", data: Any = None) -> JSONResponse:
    return JSONResponse(status_code=200, content={"code": code, "msg": msg, "data": data})


def _services(request: Request) -> Services:
    return request.app.state.services


def _summary(services: Services, record: UpgradeRecord) -> dict:
    return UpgradeSummary(
        namespace=record.namespace,
        devnet=record.devnet,
        record=record.name,
        upgrade_name=record.spec.upgrade_name,
        phase=record.phase,
        proposal_id=record.proposal_id,
        target_height=record.target_height,
        attempts=record.attempts,
        last_error=record.last_error,
        error_category=record.error_category,
        running=services.is_running(record.ref),
        started_at=record.started_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
    ).model_dump(mode="json")


def _devnet(namespace: str, name: str) -> Optional[DevnetRef]:
    try:
        return DevnetRef(namespace=namespace, name=name)
    except ValidationError:
        return None


async def _load(services: Services, devnet: DevnetRef) -> tuple[Optional[UpgradeRecord], Optional[JSONResponse]]:
    """Load a record or build the error response for why it can't be."""
    try:
        record = await services.store.load(devnet)
    except CorruptStateError as e:
        return None, _respond(500, str(e))
    if record is None:
        return None, _respond(404, f"No upgrade found for devnet {devnet}")
    return record, None


def _invalid_devnet(namespace: str, name: str) -> JSONResponse:
    return _respond(400, f"Invalid devnet reference: {namespace}/{name}")


@router.get("")
async def list_upgrades(request: Request):
    """GET /api/v1.0/upgrades - Active upgrades plus any unreadable records.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": {
                "upgrades": [{"namespace": "default", "devnet": "dev1", "phase": "voting", ...}],
                "corrupt": {"default/dev2": "checksum mismatch"}
            }
        }
    """
    services = _services(request)
    records, corrupt = await services.store.scan()
    return _respond(
        data={
            "upgrades": [_summary(services, r) for r in records if not r.is_terminal],
            "corrupt": {key: error.reason for key, error in corrupt.items()},
        }
    )


@router.get("/{namespace}/{name}")
async def get_upgrade(namespace: str, name: str, request: Request):
    """GET /api/v1.0/upgrades/{namespace}/{name} - Current record of a devnet."""
    services = _services(request)
    devnet = _devnet(namespace, name)
    if devnet is None:
        return _invalid_devnet(namespace, name)
    record, error = await _load(services, devnet)
    if error is not None:
        return error
    return _respond(
        data={
            "summary": _summary(services, record),
            "record": record.model_dump(mode="json"),
        }
    )


@router.get("/{namespace}/{name}/history")
async def get_history(namespace: str, name: str, request: Request):
    """GET /api/v1.0/upgrades/{namespace}/{name}/history - Archived attempts, oldest first."""
    services = _services(request)
    devnet = _devnet(namespace, name)
    if devnet is None:
        return _invalid_devnet(namespace, name)
    try:
        archived = await services.store.history(devnet)
    except CorruptStateError as e:
        return _respond(500, str(e))
    return _respond(data=[_summary(services, r) for r in archived])


@router.post("/{namespace}/{name}")
async def start_upgrade(namespace: str, name: str, body: StartUpgradeRequest, request: Request):
    """POST /api/v1.0/upgrades/{namespace}/{name} - Start a new upgrade.

    The orchestration pass runs in the background; poll the status
    endpoint for progress.

    Returns:
        409 if the devnet already has an active upgrade or a running pass
    """
    services = _services(request)
    try:
        spec = UpgradeSpec(
            devnet=DevnetRef(namespace=namespace, name=name), **body.model_dump()
        )
    except ValidationError as e:
        return _respond(400, f"Invalid upgrade spec: {e.errors(include_url=False)[0]['msg']}")

    if services.is_running(spec.devnet):
        return _respond(409, f"An upgrade pass is already running for {spec.devnet}")
    try:
        existing = await services.store.load(spec.devnet)
    except CorruptStateError as e:
        return _respond(500, str(e))
    if existing is not None and not existing.is_terminal:
        error = ActiveUpgradeExists(spec.devnet.key, existing.phase.value)
        return _respond(409, str(error), data=_summary(services, existing))

    services.launch(spec.devnet, services.resumable.start(spec))
    logger.info(f"{spec.devnet}: upgrade {spec.upgrade_name} started via API")
    return _respond(data={"devnet": spec.devnet.key, "upgrade_name": spec.upgrade_name})


@router.post("/{namespace}/{name}/resume")
async def resume_upgrade(namespace: str, name: str, request: Request):
    """POST /api/v1.0/upgrades/{namespace}/{name}/resume - Reconcile and continue."""
    services = _services(request)
    devnet = _devnet(namespace, name)
    if devnet is None:
        return _invalid_devnet(namespace, name)
    record, error = await _load(services, devnet)
    if error is not None:
        return error
    if record.is_terminal:
        return _respond(msg=f"Upgrade already {record.phase.value}", data=_summary(services, record))
    if services.is_running(devnet) or services.locks.is_held(devnet):
        return _respond(409, str(UpgradeInProgress(devnet.key)), data=_summary(services, record))

    services.launch(devnet, services.resumable.resume(devnet))
    logger.info(f"{devnet}: resume of {record.name} requested via API")
    return _respond(data=_summary(services, record))


@router.post("/{namespace}/{name}/retry")
async def retry_upgrade(namespace: str, name: str, request: Request):
    """POST /api/v1.0/upgrades/{namespace}/{name}/retry - Fresh attempt after a terminal one."""
    services = _services(request)
    devnet = _devnet(namespace, name)
    if devnet is None:
        return _invalid_devnet(namespace, name)
    record, error = await _load(services, devnet)
    if error is not None:
        return error
    if not record.is_terminal:
        return _respond(
            409, str(ActiveUpgradeExists(devnet.key, record.phase.value)), data=_summary(services, record)
        )
    if services.is_running(devnet):
        return _respond(409, str(UpgradeInProgress(devnet.key)))

    services.launch(devnet, services.resumable.retry(devnet))
    logger.info(f"{devnet}: retry of {record.spec.upgrade_name} requested via API")
    return _respond(data={"devnet": devnet.key, "previous_attempt": record.name})


@router.post("/{namespace}/{name}/cancel")
async def cancel_upgrade(
    namespace: str, name: str, request: Request, body: Optional[CancelRequest] = None
):
    """POST /api/v1.0/upgrades/{namespace}/{name}/cancel - Stop and cancel an upgrade.

    A running pass is stopped first (its last checkpoint is kept), then the
    record moves to cancelled.
    """
    services = _services(request)
    devnet = _devnet(namespace, name)
    if devnet is None:
        return _invalid_devnet(namespace, name)
    reason = (body or CancelRequest()).reason

    await services.stop(devnet)
    try:
        record = await services.resumable.cancel(devnet, reason)
    except UpgradeNotFound as e:
        return _respond(404, str(e))
    except UpgradeInProgress as e:
        return _respond(409, str(e))
    except CorruptStateError as e:
        return _respond(500, str(e))
    return _respond(data=_summary(services, record))


@router.post("/{namespace}/{name}/quarantine")
async def quarantine_upgrade(namespace: str, name: str, request: Request):
    """POST /api/v1.0/upgrades/{namespace}/{name}/quarantine - Move an unreadable record aside.

    Only meant for records the store reports as corrupt; the file is
    renamed, never deleted.
    """
    services = _services(request)
    devnet = _devnet(namespace, name)
    if devnet is None:
        return _invalid_devnet(namespace, name)
    if services.is_running(devnet):
        return _respond(409, str(UpgradeInProgress(devnet.key)))
    try:
        record = await services.store.load(devnet)
    except CorruptStateError:
        record = None
    if record is not None:
        return _respond(409, f"Upgrade record for {devnet} is readable, not quarantining")
    moved = await services.store.quarantine(devnet)
    if moved is None:
        return _respond(404, f"No upgrade found for devnet {devnet}")
    return _respond(data={"path": str(moved)})
