"""Analysis route: run a billed vision analysis for one uploaded image.

Status mapping for callers:

- 200: analysis succeeded and was debited.
- 403: quota exhausted (before the call, or at the post-call debit, in
  which case the result is withheld and nothing is charged).
- 504: both attempts timed out; nothing charged, safe to retry.
- 502: the vision provider failed; nothing charged.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from packverify.api.dependencies import get_analysis_orchestrator, get_current_uid
from packverify.api.error_handlers import debit_error
from packverify.core.config import settings
from packverify.models.enums import AnalysisState, UsageKind
from packverify.models.schemas import AnalysisResponse
from packverify.services.analysis import AnalysisOrchestrator
from packverify.services.usage_ledger import quota_snapshot

router = APIRouter(prefix="/api", tags=["analysis"])


@router.post("/analyze", response_model=AnalysisResponse)
async def analyze_image(
    file: UploadFile = File(...),
    prompt: str = Form(...),
    kind: str = Form(UsageKind.ANALYZE.value),
    uid: str = Depends(get_current_uid),
    orchestrator: AnalysisOrchestrator = Depends(get_analysis_orchestrator),
) -> AnalysisResponse:
    data = await file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")
    if len(data) > settings.MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large")

    outcome = await orchestrator.run(uid, data, prompt, kind=kind, subject_label=file.filename or "")

    if outcome.refused is not None:
        raise debit_error(outcome.refused)
    if outcome.state is AnalysisState.TIMED_OUT:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail="Analysis timed out, please retry")
    if outcome.state is AnalysisState.FAILED:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Analysis failed: {outcome.error}")
    if not outcome.billed:
        raise debit_error(outcome.debit.status, outcome.debit.user, outcome.debit.debit)

    return AnalysisResponse(
        state=outcome.state.value,
        attempts=outcome.attempts,
        result=outcome.result.result_payload,
        token_usage=outcome.result.token_usage,
        quota=quota_snapshot(outcome.debit.user),
    )
