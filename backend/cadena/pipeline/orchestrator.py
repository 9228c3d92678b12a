"""Analysis orchestrator: one expediente in, one result dict out.

Pipeline:
  1. Structural checks (files, transfer documents, VIN, origin); failures abort
  2. Normalize + sort transfer documents
  3. Build the ownership chain
  4. Sequence gaps (always)
  5. Independent passes: integrity, patterns, temporal, duplicates
  6. Certificate passes (only when certificates exist)
  7. Executive summary

Every pass in 5-7 is isolated: an exception becomes an AnalysisResult
failure, is logged, and the section is left out of the response.
"""

import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable, Optional

from cadena.config import RETURN_POLICY, TRANSFER_DOCUMENT_TYPES, TRACE_ENABLED
from cadena.pipeline.chain import build_ownership_chain, detect_sequence_gaps
from cadena.pipeline.coverage import (
    analyze_certificates,
    cross_validate,
    detect_vigencia_gaps,
    validate_property_ownership,
)
from cadena.pipeline.detectors import (
    analyze_temporal_anomalies,
    detect_duplicates,
    detect_suspicious_patterns,
    validate_document_integrity,
)
from cadena.pipeline.models import AnalysisResult, ReturnPolicy
from cadena.pipeline.normalizer import (
    extract_vin,
    find_origin_document,
    is_transfer_file,
    normalize_all,
    sort_documents_by_date,
    validate_vin_consistency,
)
from cadena.pipeline.summary import build_executive_summary
from cadena.pipeline.utils import to_date

logger = logging.getLogger(__name__)


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


class AnalysisSession:
    """One expediente (the documents of a single vehicle) and its analysis state."""

    def __init__(self, files: Optional[list] = None, created_at: Optional[str] = None,
                 active_vehicle: Any = None):
        self.session_id = str(uuid.uuid4())[:8]
        self.created_at = datetime.now().isoformat()
        self.files = files
        self.expediente_created_at = created_at
        self.active_vehicle = active_vehicle
        self.status = "initialized"
        self.progress = []
        self.result = None
        self.error = None

    @classmethod
    def from_expediente(cls, data: dict) -> "AnalysisSession":
        return cls(
            files=data.get("files"),
            created_at=data.get("created_at"),
            active_vehicle=data.get("active_vehicle"),
        )

    def _log(self, stage: str, message: str, detail: dict | None = None):
        entry = {
            "timestamp": datetime.now().isoformat(),
            "stage": stage,
            "message": message,
        }
        if detail:
            entry["detail"] = detail
        self.progress.append(entry)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "status": self.status,
            "total_files": len(self.files) if isinstance(self.files, list) else 0,
            "active_vehicle": self.active_vehicle,
            "expediente_created_at": self.expediente_created_at,
            "progress": self.progress,
            "has_result": self.result is not None,
            "error": self.error,
        }


# ═══════════════════════════════════════════════════
# SERIALIZATION
# ═══════════════════════════════════════════════════

def to_jsonable(value: Any) -> Any:
    """Recursively turn records (anything with ``to_dict``) into plain dicts."""
    if hasattr(value, "to_dict"):
        return to_jsonable(value.to_dict())
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _origin_summary(origin) -> dict:
    return {
        "fileId": origin.file_id,
        "fecha": origin.fecha,
        "rfcEmisor": origin.emisor_rfc,
        "nombreEmisor": origin.emisor_nombre,
        "rfcReceptor": origin.receptor_rfc,
        "nombreReceptor": origin.receptor_nombre,
        "documentType": origin.kind,
    }


def _failure(session: AnalysisSession, error: str, details: Any = None) -> dict:
    session.status = "failed"
    session.error = error
    session._log("structure", error)
    logger.warning(f"Session {session.session_id}: analysis aborted: {error}")
    out = {"success": False, "error": error}
    if details is not None:
        out["details"] = details
    session.result = out
    return out


# ═══════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════

def _run_pass(session: AnalysisSession, label: str, fn: Callable, *args, **kwargs) -> AnalysisResult:
    try:
        value = fn(*args, **kwargs)
    except Exception as e:
        logger.error(f"Session {session.session_id}: analysis [{label}] failed: {e}")
        session._log(label, f"Análisis no disponible: {e}")
        return AnalysisResult.failure(label, e)
    session._log(label, "Análisis completado")
    _trace(f"PASS [{label}] ok")
    return AnalysisResult.success(value)


def analyze_ownership_sequence(session, *, as_of=None, return_policy=None) -> dict:
    """Analyze an expediente's ownership chain and certificate compliance.

    Args:
        session: an :class:`AnalysisSession` or a raw expediente dict
            (``{"files": [...], "created_at": ..., "active_vehicle": ...}``).
        as_of: query date for certificate validity (default: today).
        return_policy: :class:`ReturnPolicy` or its value; defaults to
            ``CADENA_RETURN_POLICY``.

    Returns:
        The result dict. Never raises; ``success`` is False only for
        structural problems with the expediente.
    """
    if not isinstance(session, AnalysisSession):
        session = AnalysisSession.from_expediente(session if isinstance(session, dict) else {})
    session.status = "analyzing"
    session.error = None

    as_of_date = to_date(as_of) if as_of is not None else date.today()
    if as_of_date is None:
        return _failure(session, f"Fecha de consulta inválida: {as_of}")
    try:
        policy = ReturnPolicy.parse(return_policy if return_policy is not None else RETURN_POLICY)
    except ValueError as e:
        return _failure(session, str(e))

    # ── 1. Structural checks ──
    files = session.files
    if not isinstance(files, list):
        return _failure(session, "No se encontraron archivos en el expediente")

    transfer_files = [f for f in files if is_transfer_file(f)]
    if not transfer_files:
        return _failure(session, "No se encontraron facturas ni endosos en el expediente")

    vin = extract_vin(files)
    vin_check = validate_vin_consistency(transfer_files, vin)
    if not vin_check["is_valid"]:
        return _failure(session, "VIN inconsistente entre documentos", vin_check["details"])

    transfers = normalize_all(transfer_files, as_of_date)
    origin = find_origin_document(transfers)
    if origin is None:
        return _failure(session, 'No se encontró el documento de origen (usado_nuevo: "NUEVO")')

    # ── 2-4. Chain ──
    others = normalize_all([f for f in files if not is_transfer_file(f)], as_of_date)
    certificates = [d for d in others if d.kind == "vehicle_certificate"]
    cancellations = [d for d in others if d.kind == "vehicle_cancellation"]
    verifications = [d for d in others if d.kind == "verification"]

    documents = sort_documents_by_date(transfers)
    chain = build_ownership_chain(documents, origin, return_policy=policy)
    sequence = detect_sequence_gaps(chain, certificates)
    session._log("chain", f"Cadena construida con {sum(1 for l in chain if l.placed)} eslabón(es)",
                 {"gaps": len(sequence["gaps"]), "retornos": len(sequence["retornos"])})

    # ── 5-6. Independent passes ──
    passes = [
        ("integrityAnalysis", validate_document_integrity, (documents, origin, as_of_date)),
        ("patternDetection", detect_suspicious_patterns, (chain,)),
        ("temporalAnalysis", analyze_temporal_anomalies, (chain, documents)),
        ("duplicateDetection", detect_duplicates, (documents,)),
    ]
    if certificates:
        passes += [
            ("tarjetasAnalysis", analyze_certificates,
             (chain, certificates, cancellations, verifications, as_of_date)),
            ("vigenciaAnalysis", detect_vigencia_gaps, (certificates, as_of_date)),
            ("propertyValidation", validate_property_ownership, (chain, certificates, as_of_date)),
            ("crossValidation", cross_validate, (chain, certificates)),
        ]

    sections: dict[str, Any] = {}
    unavailable: list[str] = []
    for label, fn, args in passes:
        outcome = _run_pass(session, label, fn, *args)
        if outcome.ok:
            sections[label] = outcome.value
        else:
            unavailable.append(label)

    # ── 7. Summary ──
    outcome = _run_pass(
        session, "executiveSummary", build_executive_summary,
        sequence,
        integrity=sections.get("integrityAnalysis"),
        patterns=sections.get("patternDetection"),
        temporal=sections.get("temporalAnalysis"),
        duplicates=sections.get("duplicateDetection"),
        certificates=sections.get("tarjetasAnalysis"),
        vigencia_gaps=sections.get("vigenciaAnalysis"),
        cross=sections.get("crossValidation"),
        property_validation=sections.get("propertyValidation"),
    )
    if outcome.ok:
        sections["executiveSummary"] = outcome.value
    else:
        unavailable.append("executiveSummary")

    result = {
        "success": True,
        "vin": vin,
        "totalDocuments": len(transfer_files),
        "totalInvoices": sum(1 for d in transfers if d.kind == "invoice"),
        "totalReinvoices": sum(1 for d in transfers if d.kind == "reinvoice"),
        "totalEndorsements": sum(1 for d in transfers if d.kind == "endorsement"),
        "totalCertificates": len(certificates),
        "originDocument": _origin_summary(origin),
        "ownershipChain": chain,
        "sequenceAnalysis": {
            "hasGaps": sequence["has_gaps"],
            "hasRetornos": sequence["has_retornos"],
            "totalGaps": len(sequence["gaps"]),
            "totalRetornos": len(sequence["retornos"]),
            "gaps": sequence["gaps"],
            "retornos": sequence["retornos"],
            "isComplete": not sequence["has_gaps"],
        },
        **sections,
        "metadata": {
            "analyzedAt": datetime.now().isoformat(),
            "asOf": as_of_date.isoformat(),
            "vehicleActive": session.active_vehicle,
            "createdAt": session.expediente_created_at,
            "returnPolicy": policy.value,
            "unavailableAnalyses": unavailable,
        },
    }

    logger.info(
        f"Session {session.session_id}: analysis complete: {len(chain)} link(s), "
        f"{len(sequence['gaps'])} gap(s), {len(certificates)} certificate(s), "
        f"{len(unavailable)} unavailable section(s)"
    )
    session.status = "completed"
    session.result = to_jsonable(result)
    return session.result
