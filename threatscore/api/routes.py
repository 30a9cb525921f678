import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile

from threatscore.config import settings
from threatscore.core.errors import UnknownSignalError
from threatscore.schemas import (
    Analysis,
    AnalysisResponse,
    BlacklistEntryIn,
    BlacklistResponse,
    EmailSubmission,
    SignalSettingsResponse,
)
from threatscore.services.analysis_service import AnalysisOutcome, AnalysisService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_service(request: Request) -> AnalysisService:
    """Dependency for FastAPI routes"""
    return request.app.state.analysis_service


def _to_response(outcome: AnalysisOutcome) -> AnalysisResponse:
    return AnalysisResponse(analysis=outcome.analysis, error=outcome.error)

# ============================================================================
# ANALYSIS ENDPOINTS
# ============================================================================

@router.post("/analyze", response_model=AnalysisResponse)
def analyze_email(submission: EmailSubmission,
                  service: AnalysisService = Depends(get_service)):
    """Analyze a raw RFC 5322 message sent as JSON"""
    return _to_response(service.analyze_email(submission.raw_email))


@router.post("/analyze/upload", response_model=AnalysisResponse)
async def analyze_upload(file: UploadFile = File(...),
                         service: AnalysisService = Depends(get_service)):
    """Analyze an uploaded email file (.eml format)"""
    raw_email = await file.read()
    if len(raw_email) > settings.MAX_EMAIL_SIZE_MB * 1024 * 1024:
        raise HTTPException(status_code=413, detail="Email exceeds the maximum size")
    if not raw_email:
        raise HTTPException(status_code=400, detail="Empty file")
    return _to_response(service.analyze_email(raw_email))


@router.get("/history", response_model=List[Analysis])
def get_history(service: AnalysisService = Depends(get_service)):
    """Most recent analyses, newest first"""
    return service.history.list()

# ============================================================================
# BLACKLIST ENDPOINTS
# ============================================================================

@router.get("/blacklist", response_model=BlacklistResponse)
def list_blacklist(service: AnalysisService = Depends(get_service)):
    return BlacklistResponse(entries=service.blacklist.list())


@router.post("/blacklist", response_model=BlacklistResponse, status_code=201)
def add_blacklist_entry(payload: BlacklistEntryIn,
                        service: AnalysisService = Depends(get_service)):
    if not payload.entry.strip():
        raise HTTPException(status_code=400, detail="Entry must not be blank")
    service.blacklist.add(payload.entry)
    return BlacklistResponse(entries=service.blacklist.list())


@router.delete("/blacklist/{entry}", response_model=BlacklistResponse)
def remove_blacklist_entry(entry: str, service: AnalysisService = Depends(get_service)):
    if not service.blacklist.remove(entry):
        raise HTTPException(status_code=404, detail=f"{entry} is not blacklisted")
    return BlacklistResponse(entries=service.blacklist.list())

# ============================================================================
# SIGNAL SETTINGS ENDPOINTS
# ============================================================================

def _settings_response(service: AnalysisService, enabled) -> SignalSettingsResponse:
    return SignalSettingsResponse(
        enabled={key.value: value for key, value in enabled.items()},
        weights=service.scorer.weights.as_dict(),
    )


@router.get("/settings/signals", response_model=SignalSettingsResponse)
def get_signal_settings(service: AnalysisService = Depends(get_service)):
    return _settings_response(service, service.signal_settings.get_enabled_map())


@router.put("/settings/signals", response_model=SignalSettingsResponse)
def update_signal_settings(changes: Dict[str, bool],
                           service: AnalysisService = Depends(get_service)):
    try:
        enabled = service.signal_settings.update(changes)
    except UnknownSignalError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _settings_response(service, enabled)
