"""FastAPI REST interface for unDNEMO polling and control.

Single-process, single-device lifecycle with thread-safe access to:
- UndnemoController (UDP communication, channel polling, controls)
- ChannelTableStore (pandas DataFrame of the latest channel table)
- SnapshotRecorder (background read thread)

Error mapping:
- InvalidControlValue → 400 (UnknownControlProperty included)
- CommandFailed → 502
- TransportError, NotConnected, PollFailed → 503
- Other exceptions → 500
"""

import logging
import os
import tempfile
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from data_store import ChannelTableStore, SnapshotRecorder
from undnemo_lib import UndnemoController, __version__
from undnemo_lib.errors import (
    CommandFailed,
    InvalidControlValue,
    NotConnected,
    PollFailed,
    TransportError,
)
from undnemo_lib.models import Snapshot

# =============================================================================
# Environment Configuration
# =============================================================================

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "9160"))
DEFAULT_DEVICE_HOST = os.getenv("DEVICE_HOST", "")
DEFAULT_DEVICE_PORT = int(os.getenv("DEVICE_PORT", "49494"))
DEFAULT_CHANNEL_FILTER = os.getenv("CHANNEL_FILTER", "")
RECORD_INTERVAL_S = float(os.getenv("RECORD_INTERVAL_S", "30"))
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000"
).split(",")

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Global Singletons
# =============================================================================

_controller: Optional[UndnemoController] = None
_store: Optional[ChannelTableStore] = None
_recorder: Optional[SnapshotRecorder] = None
_lock = RLock()  # Protects state-changing operations

# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="unDNEMO API",
    description="REST interface for polling and controlling QSC Attero Tech unDNEMO devices",
    version=__version__
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =============================================================================
# Request/Response Models
# =============================================================================

class ControlRequest(BaseModel):
    """Request body for POST /control."""
    property: str
    value: Union[int, float, bool, str, None] = None


class StatusResponse(BaseModel):
    """Response for GET /status."""
    connected: bool
    online: Optional[bool]
    recording: bool
    host: Optional[str]
    state: str
    channel_filter: Optional[List[int]]
    rows: int


class ConnectResponse(BaseModel):
    """Response for POST /connect."""
    status: str
    host: str
    port: int
    channel_filter: Optional[List[int]]
    recording: bool


class ControlDescriptorModel(BaseModel):
    name: str
    type: str
    value: str
    range_start: Optional[int] = None
    range_end: Optional[int] = None
    options: List[str] = []


class SnapshotResponse(BaseModel):
    """Response for GET /snapshot."""
    state: str
    complete: bool
    statistics: Dict[str, str]
    controls: List[ControlDescriptorModel]


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(InvalidControlValue)
async def invalid_control_handler(request: Request, exc: InvalidControlValue):
    """Map InvalidControlValue to 400 Bad Request."""
    logger.error(f"InvalidControlValue: {exc}")
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(CommandFailed)
async def command_failed_handler(request: Request, exc: CommandFailed):
    """Map CommandFailed to 502 Bad Gateway (device refused the command)."""
    logger.error(f"CommandFailed: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError):
    """Map TransportError to 503 Service Unavailable."""
    logger.error(f"TransportError: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(NotConnected)
async def not_connected_handler(request: Request, exc: NotConnected):
    """Map NotConnected to 503 Service Unavailable."""
    logger.error(f"NotConnected: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(PollFailed)
async def poll_failed_handler(request: Request, exc: PollFailed):
    """Map PollFailed to 503. The errors are delivered once; the next read is clean."""
    logger.error(f"PollFailed: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# =============================================================================
# Helpers
# =============================================================================

def _require_controller() -> UndnemoController:
    if _controller is None:
        raise HTTPException(status_code=503, detail="Not connected")
    return _controller


def _snapshot_to_response(snapshot: Snapshot) -> SnapshotResponse:
    return SnapshotResponse(
        state=snapshot.state.value,
        complete=snapshot.complete,
        statistics=dict(snapshot.statistics),
        controls=[
            ControlDescriptorModel(
                name=c.name,
                type=c.type,
                value=c.value,
                range_start=c.range_start,
                range_end=c.range_end,
                options=list(c.options),
            )
            for c in snapshot.controls
        ],
    )


# =============================================================================
# Read-Only Endpoints
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "service": "unDNEMO API",
        "version": __version__,
        "status": "online"
    }


@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Get current system status.

    Returns connection state, recording status, engine state and row count.
    Does not talk to the device: online reflects whether the device answered
    the last request (null until the first one).
    """
    connected = _controller is not None and _controller.is_connected()
    recording = _recorder is not None and _recorder.is_running()
    channel_filter = None
    host = None
    online = None
    state_str = "disconnected"
    rows = 0

    if _controller:
        host = _controller.host
        online = _controller.online
        state_str = _controller.state.value
        if _controller.channel_filter is not None:
            channel_filter = list(_controller.channel_filter)

    if _store:
        rows = len(_store.get_dataframe())

    return StatusResponse(
        connected=connected,
        online=online,
        recording=recording,
        host=host,
        state=state_str,
        channel_filter=channel_filter,
        rows=rows
    )


@app.get("/snapshot", response_model=SnapshotResponse)
async def get_snapshot():
    """Read the device state.

    Serves the cached snapshot and starts a background poll cycle when one
    is due. The first read after connect returns scalars only
    (complete=false); channel groups appear once the poll has merged.

    Raises:
        503: If not connected, the device does not answer, or the last poll
             cycle reported errors (delivered once)
    """
    controller = _require_controller()
    snapshot = controller.get_snapshot()

    if _store:
        _store.update_from_snapshot(snapshot)

    return _snapshot_to_response(snapshot)


@app.get("/channels")
async def get_channels():
    """Get the latest stored channel table.

    Returns:
        {"rows": [...], "stats": {...}} with one row per tracked channel
    """
    if not _store:
        return {"rows": [], "stats": ChannelTableStore().get_stats()}

    df = _store.get_dataframe()
    return {"rows": df.to_dict(orient="records"), "stats": _store.get_stats()}


# =============================================================================
# Lifecycle & Control Endpoints
# =============================================================================

@app.post("/connect", response_model=ConnectResponse)
async def connect(
    host: str = Query(DEFAULT_DEVICE_HOST, description="Device address"),
    port: int = Query(DEFAULT_DEVICE_PORT, description="Device UDP port"),
    channel_filter: str = Query(DEFAULT_CHANNEL_FILTER, description="Comma-separated channel indices (e.g. 1,2,3)"),
    auto_record: bool = Query(False, description="Start the background SnapshotRecorder")
):
    """Open the transport to a device.

    Returns:
        {"status": "connected", "host": ..., "port": ..., ...}

    Raises:
        400: If already connected or no host given
        503: If the socket cannot be opened (TransportError)
    """
    global _controller, _store, _recorder

    with _lock:
        if _controller is not None:
            raise HTTPException(status_code=400, detail="Already connected. Disconnect first.")
        if not host:
            raise HTTPException(status_code=400, detail="No device host given (set DEVICE_HOST or ?host=)")

        logger.info(f"Connecting to {host}:{port}...")
        controller = UndnemoController(channel_filter=channel_filter or None)
        controller.connect(host=host, port=port)

        _controller = controller
        _store = ChannelTableStore()

        recording = False
        if auto_record:
            _recorder = SnapshotRecorder(_controller, _store, poll_interval_s=RECORD_INTERVAL_S)
            _recorder.start()
            recording = True

        channel_filter_list = list(controller.channel_filter) if controller.channel_filter else None
        logger.info(f"Connected to {host}:{port}")
        return ConnectResponse(
            status="connected",
            host=host,
            port=port,
            channel_filter=channel_filter_list,
            recording=recording
        )


@app.post("/disconnect")
async def disconnect():
    """Stop recording, stop polling and close the transport.

    Returns:
        {"status": "disconnected"}
    """
    global _controller, _store, _recorder

    with _lock:
        if _recorder and _recorder.is_running():
            logger.info("Stopping recorder...")
            _recorder.stop()
        _recorder = None

        if _controller:
            _controller.disconnect()
        _controller = None

        if _store:
            _store.clear()
        _store = None

        return {"status": "disconnected"}


@app.post("/control")
async def apply_control(req: ControlRequest):
    """Apply one control (SpeakerMute, Volume, ButtonBrightness,
    DisplayBrightness or ActiveChannel#ChannelIndex).

    The cache is patched in place; no full channel poll follows. Poll
    errors pending from earlier cycles are left for the next /snapshot.

    Returns:
        Cached snapshot after the control

    Raises:
        400: Unknown property or invalid value (nothing is sent)
        502: Device answered NACK
        503: Not connected or no answer
    """
    controller = _require_controller()

    with _lock:
        logger.info(f"[CONTROL] {req.property} = {req.value!r}")
        controller.apply_control(req.property, req.value)
        snapshot = controller.view()

    if _store:
        _store.update_from_snapshot(snapshot)

    return _snapshot_to_response(snapshot)


@app.get("/export/csv")
async def export_csv():
    """Export the stored channel table as a CSV download.

    Raises:
        404: If no channel table has been stored yet
    """
    if not _store or _store.get_stats()["row_count"] == 0:
        raise HTTPException(status_code=404, detail="No channel table to export")

    path = Path(tempfile.gettempdir()) / "undnemo_channels.csv"
    abs_path = _store.export_csv(str(path))
    return FileResponse(path=abs_path, media_type="text/csv", filename="undnemo_channels.csv")


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Log startup configuration."""
    logger.info("=" * 60)
    logger.info("unDNEMO API started")
    logger.info(f"Version: {__version__}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Default Device: {DEFAULT_DEVICE_HOST or '(none)'}:{DEFAULT_DEVICE_PORT}")
    logger.info(f"Channel Filter: {DEFAULT_CHANNEL_FILTER or '(all)'}")
    logger.info(f"Record Interval: {RECORD_INTERVAL_S}s")
    logger.info(f"CORS Origins: {CORS_ORIGINS}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on shutdown."""
    global _controller, _recorder

    logger.info("Shutting down unDNEMO API...")

    if _recorder and _recorder.is_running():
        logger.info("Stopping recorder...")
        _recorder.stop()

    if _controller and _controller.is_connected():
        logger.info("Disconnecting controller...")
        try:
            _controller.disconnect()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    logger.info("Shutdown complete")
