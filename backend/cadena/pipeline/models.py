"""Core data records for the ownership-chain engine.

Every record is a plain dataclass with a ``to_dict()`` so results can be
returned straight through the HTTP layer.  Nothing here performs analysis.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Optional


class LinkState(str, Enum):
    OK = "OK"
    ENDORSEMENT = "ENDORSEMENT"
    REINVOICE_TRANSFER = "REINVOICE-TRANSFER"
    RETURN = "RETURN"
    BREAK = "BREAK"


class ReturnPolicy(str, Enum):
    ALLOW = "allow"                         # direct back-and-forth accepted as RETURN
    REJECT_PING_PONG = "reject_ping_pong"   # direct back-and-forth left unplaced

    @classmethod
    def parse(cls, value: Any) -> "ReturnPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown return policy {value!r}; expected one of "
                f"{', '.join(p.value for p in cls)}"
            )


# ═══════════════════════════════════════════════════
# DOCUMENTS
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class RawDocument:
    """One OCR'd file of the expediente, as received."""
    document_type: str
    ocr: dict = field(default_factory=dict)
    created_at: Optional[str] = None
    file_id: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "RawDocument":
        ocr = data.get("ocr")
        return cls(
            document_type=str(data.get("document_type") or ""),
            ocr=ocr if isinstance(ocr, dict) else {},
            created_at=data.get("created_at"),
            file_id=data.get("file_id"),
            url=data.get("url"),
        )


@dataclass
class VehicleInfo:
    marca: Optional[str] = None
    modelo: Optional[str] = None
    ano: Optional[str] = None
    clase_tipo: Optional[str] = None

    def descriptor(self) -> str:
        """Compact 'MARCA MODELO AÑO' string, empty when nothing is known."""
        parts = [str(p).strip().upper() for p in (self.marca, self.modelo, self.ano) if p]
        return " ".join(p for p in parts if p)

    def to_dict(self) -> dict:
        return {
            "marca": self.marca,
            "modelo": self.modelo,
            "ano": self.ano,
            "clase_tipo": self.clase_tipo,
        }


@dataclass
class NormalizedDocument:
    """Canonical projection of any document kind.

    Fields that do not apply to a kind stay None; they are never omitted.
    """
    file_id: Optional[str]
    kind: str
    created_at: Optional[str] = None
    url: Optional[str] = None
    fecha: Optional[str] = None
    numero_documento: Optional[str] = None
    emisor_rfc: Optional[str] = None
    emisor_nombre: Optional[str] = None
    receptor_rfc: Optional[str] = None
    receptor_nombre: Optional[str] = None
    total: Optional[float] = None
    usado_nuevo: Optional[str] = None
    vin: Optional[str] = None
    vehiculo: VehicleInfo = field(default_factory=VehicleInfo)

    # vehicle_certificate / vehicle_cancellation / verification
    estado_emisor: Optional[str] = None
    fecha_expedicion: Optional[str] = None
    fecha_vigencia: Optional[str] = None   # explicit, as printed on the card
    vencimiento: Optional[str] = None      # effective expiration (explicit or computed)
    rfc: Optional[str] = None
    nombre: Optional[str] = None
    placa: Optional[str] = None
    folio: Optional[str] = None
    repuve: Optional[str] = None
    fecha_baja: Optional[str] = None
    folio_baja: Optional[str] = None
    fecha_verificacion: Optional[str] = None
    resultado: Optional[str] = None

    @property
    def is_origin(self) -> bool:
        return (self.usado_nuevo or "").strip().upper() in ("NUEVO", "NEW")

    def to_dict(self) -> dict:
        return {
            "file_id": self.file_id,
            "kind": self.kind,
            "created_at": self.created_at,
            "url": self.url,
            "fecha": self.fecha,
            "numero_documento": self.numero_documento,
            "emisor_rfc": self.emisor_rfc,
            "emisor_nombre": self.emisor_nombre,
            "receptor_rfc": self.receptor_rfc,
            "receptor_nombre": self.receptor_nombre,
            "total": self.total,
            "usado_nuevo": self.usado_nuevo,
            "vin": self.vin,
            "vehiculo": self.vehiculo.to_dict(),
            "estado_emisor": self.estado_emisor,
            "fecha_expedicion": self.fecha_expedicion,
            "fecha_vigencia": self.fecha_vigencia,
            "vencimiento": self.vencimiento,
            "rfc": self.rfc,
            "nombre": self.nombre,
            "placa": self.placa,
            "folio": self.folio,
            "repuve": self.repuve,
            "fecha_baja": self.fecha_baja,
            "folio_baja": self.folio_baja,
            "fecha_verificacion": self.fecha_verificacion,
            "resultado": self.resultado,
        }


# ═══════════════════════════════════════════════════
# CHAIN
# ═══════════════════════════════════════════════════

_STATE_LABELS = {
    LinkState.OK: "Transferencia",
    LinkState.ENDORSEMENT: "Endoso",
    LinkState.REINVOICE_TRANSFER: "Refactura",
    LinkState.RETURN: "Retorno",
    LinkState.BREAK: "Ruptura",
}


@dataclass
class OwnershipLink:
    """A document placed (or not) in the ownership sequence."""
    document: NormalizedDocument
    state: LinkState
    position: Optional[int] = None     # 1-based; always None for BREAK
    is_origin: bool = False

    @property
    def label(self) -> str:
        if self.is_origin:
            return "Origen"
        return _STATE_LABELS[self.state]

    @property
    def placed(self) -> bool:
        return self.position is not None

    @property
    def emisor_rfc(self) -> Optional[str]:
        return self.document.emisor_rfc

    @property
    def receptor_rfc(self) -> Optional[str]:
        return self.document.receptor_rfc

    @property
    def fecha(self) -> Optional[str]:
        return self.document.fecha

    def to_dict(self) -> dict:
        doc = self.document
        return {
            "position": self.position,
            "state": self.state.value,
            "label": self.label,
            "is_origin": self.is_origin,
            "file_id": doc.file_id,
            "document_type": doc.kind,
            "document_url": doc.url,
            "created_at": doc.created_at,
            "fecha": doc.fecha,
            "numero_documento": doc.numero_documento,
            "rfc_emisor": doc.emisor_rfc,
            "nombre_emisor": doc.emisor_nombre,
            "rfc_receptor": doc.receptor_rfc,
            "nombre_receptor": doc.receptor_nombre,
            "total": doc.total,
            "usado_nuevo": doc.usado_nuevo,
            "vin": doc.vin,
            "vehiculo": doc.vehiculo.to_dict(),
        }


# ═══════════════════════════════════════════════════
# FINDINGS & VERDICTS
# ═══════════════════════════════════════════════════

@dataclass
class VigenciaVerdict:
    vigente: Optional[bool]
    razon: str
    tipo_validacion: str
    vencimiento: Optional[date] = None
    modelo: Optional[str] = None
    estado_evaluado: Optional[str] = None
    hueco_documental: bool = False
    dias_vencida: Optional[int] = None
    detalles: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "vigente": self.vigente,
            "razon": self.razon,
            "tipo_validacion": self.tipo_validacion,
            "fecha_vencimiento": self.vencimiento.isoformat() if self.vencimiento else None,
            "modelo": self.modelo,
            "estado_evaluado": self.estado_evaluado,
            "hueco_documental": self.hueco_documental,
            "dias_vencida": self.dias_vencida,
            "detalles": self.detalles,
        }


@dataclass
class Gap:
    """A data-quality finding.  Append-only; never mutated after creation."""
    kind: str                 # sequence_gap | orphan_document | coverage_gap | pattern_* | temporal_* | duplicate_*
    severity: str             # critical | high | medium | low
    description: str
    document_ids: list[str] = field(default_factory=list)
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = {
            "kind": self.kind,
            "severity": self.severity,
            "description": self.description,
            "document_ids": list(self.document_ids),
        }
        for k, v in self.details.items():
            out.setdefault(k, v)
        return out


# ═══════════════════════════════════════════════════
# SUB-ANALYSIS RESULTS
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class AnalysisError:
    stage: str
    message: str
    exception_type: str = ""

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "message": self.message,
            "exception_type": self.exception_type,
        }


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of one sub-analysis: either a value or an AnalysisError."""
    ok: bool
    value: Any = None
    error: Optional[AnalysisError] = None

    @classmethod
    def success(cls, value: Any) -> "AnalysisResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, stage: str, exc: BaseException) -> "AnalysisResult":
        return cls(
            ok=False,
            error=AnalysisError(stage=stage, message=str(exc), exception_type=type(exc).__name__),
        )
