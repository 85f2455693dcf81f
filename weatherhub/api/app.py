"""
Management HTTP API.
Sensor listing, renaming, forgetting and historical log queries over JSON.
"""

import json
import logging
from typing import Callable, Dict, Iterator, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..ble.address import SensorAddress
from ..ble.codec import Reading
from ..metadata.registry import InvalidLabelError, SensorNotFoundError
from ..metadata.schema import MAX_LABEL_LENGTH
from ..service.pipeline import IngestionPipeline
from ..storage.store import StoreTransactionError


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sensors"])

NOT_FOUND_RESPONSE = {
    404: {
        "description": "Sensor not found.",
        "content": {
            "application/json": {
                "example": {"detail": "Sensor AA:BB:CC:DD:EE:FF not found"}
            }
        }
    }
}


class ChangeLabelRequest(BaseModel):
    """Rename request; a null or blank label restores the default."""
    addr: str = Field(..., description="Sensor address")
    new_label: Optional[str] = Field(None, max_length=MAX_LABEL_LENGTH, description="New sensor label")


class ForgetRequest(BaseModel):
    """Forget request."""
    addr: str = Field(..., description="Sensor address")


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def parse_address(addr: str) -> SensorAddress:
    try:
        return SensorAddress.parse(addr)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid sensor address '{addr}'")


def reading_to_log_entry(reading: Reading) -> Dict[str, Optional[int]]:
    """Log entry of a reading; absent fields are null."""
    return {
        'timestamp': reading.timestamp,
        'temperature': reading.temperature,
        'humidity': reading.humidity,
        'pressure': reading.pressure,
    }


def stream_log(readings: Iterator[Reading]) -> Iterator[str]:
    """Render readings as a JSON array, one entry at a time."""
    yield "["
    first = True
    try:
        for reading in readings:
            prefix = "" if first else ","
            first = False
            yield prefix + json.dumps(reading_to_log_entry(reading))
    except StoreTransactionError as e:
        # Headers are already sent; end the array so clients get valid JSON
        logger.error(f"Log query aborted: {e}")
    yield "]"


@router.get("/state")
async def get_state(pipeline: IngestionPipeline = Depends(get_pipeline)):
    """
    List all known sensors.
    """
    return [record.to_api_dict() for record in pipeline.list_sensors()]


@router.get("/sensors/{addr}", responses=NOT_FOUND_RESPONSE)
async def get_sensor(addr: str, pipeline: IngestionPipeline = Depends(get_pipeline)):
    """
    Get one sensor.
    """
    address = parse_address(addr)
    try:
        return pipeline.get_sensor(address).to_api_dict()
    except SensorNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/change_label", responses=NOT_FOUND_RESPONSE)
async def change_label(body: ChangeLabelRequest, pipeline: IngestionPipeline = Depends(get_pipeline)):
    """
    Rename a sensor.
    """
    address = parse_address(body.addr)
    try:
        record = await pipeline.rename(address, body.new_label)
    except SensorNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidLabelError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreTransactionError as e:
        logger.error(f"Rename of {address} failed: {e}")
        raise HTTPException(status_code=503, detail="Store unavailable")
    return record.to_api_dict()


@router.delete("/forget", responses=NOT_FOUND_RESPONSE)
async def forget_sensor(body: ForgetRequest, pipeline: IngestionPipeline = Depends(get_pipeline)):
    """
    Forget a sensor and delete its history.
    """
    address = parse_address(body.addr)
    try:
        record = await pipeline.forget(address)
    except SensorNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreTransactionError as e:
        logger.error(f"Forget of {address} failed: {e}")
        raise HTTPException(status_code=503, detail="Store unavailable")
    return record.to_api_dict()


@router.get("/log")
async def get_log(addr: str,
                  start: Optional[int] = Query(None, description="First unix timestamp to include"),
                  end: Optional[int] = Query(None, description="Last unix timestamp to include"),
                  pipeline: IngestionPipeline = Depends(get_pipeline)):
    """
    Stream the stored readings of a sensor as a JSON array, oldest first.
    """
    address = parse_address(addr)
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=422, detail="start must not be after end")

    return StreamingResponse(
        stream_log(pipeline.query_log(address, start, end)),
        media_type="application/json",
    )


@router.get("/stats")
async def get_stats(request: Request):
    """
    Runtime statistics of the hub.
    """
    provider: Optional[Callable[[], dict]] = request.app.state.status_provider
    if provider is not None:
        return provider()
    return {'pipeline': request.app.state.pipeline.get_statistics()}


def create_app(pipeline: IngestionPipeline, status_provider: Optional[Callable[[], dict]] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        pipeline: Ingestion pipeline serving management operations
        status_provider: Optional callable returning the hub status for /api/stats

    Returns:
        FastAPI: Application instance
    """
    app = FastAPI(title="Weather Station Hub API")
    app.state.pipeline = pipeline
    app.state.status_provider = status_provider
    app.include_router(router)
    return app
