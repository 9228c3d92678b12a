"""Document normalizer: maps every raw OCR'd document kind onto one
canonical :class:`NormalizedDocument`.

Field selection per kind is a fixed priority list: the first non-empty
OCR key wins, absent fields become None.  Certificates without a printed
expiration get one from the vigencia engine so both paths agree.
"""

import logging
from typing import Any, Optional

from cadena.config import TRANSFER_DOCUMENT_TYPES
from cadena.pipeline.models import NormalizedDocument, RawDocument, VehicleInfo
from cadena.pipeline.utils import normalize_rfc, parse_amount, parse_date, date_iso
from cadena.pipeline.vigencia import compute_expiration

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════
# FIELD PRIORITY LISTS
# ═══════════════════════════════════════════════════

_INVOICE_FIELDS = {
    "fecha": ("fecha_factura", "fecha_hora_emision"),
    "numero_documento": ("numero_factura", "folio_fiscal"),
    "emisor_rfc": ("rfc_emisor",),
    "emisor_nombre": ("nombre_emisor",),
    "receptor_rfc": ("rfc_receptor",),
    "receptor_nombre": ("nombre_receptor",),
    "total": ("total",),
    "usado_nuevo": ("usado_nuevo",),
}

_REINVOICE_FIELDS = {
    **_INVOICE_FIELDS,
    "fecha": ("fecha_refactura", "fecha_factura", "fecha_hora_emision"),
    "numero_documento": ("numero_refactura", "numero_factura", "folio_fiscal"),
}

_ENDORSEMENT_FIELDS = {
    "fecha": ("fecha_endoso", "fecha_hora_endoso"),
    "numero_documento": ("numero_endoso", "folio_endoso"),
    "emisor_rfc": ("rfc_endosante",),
    "emisor_nombre": ("nombre_endosante",),
    "receptor_rfc": ("rfc_endosatario",),
    "receptor_nombre": ("nombre_endosatario",),
}

_CERTIFICATE_FIELDS = {
    "estado_emisor": ("estado_emisor", "estado", "entidad_federativa"),
    "fecha_expedicion": ("fecha_expedicion", "fecha_emision"),
    "fecha_vigencia": ("fecha_vigencia", "vigencia"),
    "rfc": ("rfc", "rfc_propietario"),
    "nombre": ("nombre", "nombre_propietario", "propietario"),
    "placa": ("placa", "placas"),
    "folio": ("folio_electronico", "folio"),
    "repuve": ("repuve",),
}

_CANCELLATION_FIELDS = {
    "fecha_baja": ("fecha_baja", "fecha"),
    "folio_baja": ("folio_baja", "folio"),
    "rfc": ("rfc", "rfc_propietario"),
    "nombre": ("nombre", "nombre_propietario", "propietario"),
    "placa": ("placa", "placas"),
    "estado_emisor": ("estado_emisor", "estado", "entidad_federativa"),
}

_VERIFICATION_FIELDS = {
    "fecha_verificacion": ("fecha_verificacion", "fecha"),
    "folio": ("folio_verificacion", "folio"),
    "resultado": ("resultado",),
    "placa": ("placa", "placas"),
    "estado_emisor": ("estado_emisor", "estado", "entidad_federativa"),
}

_VEHICLE_FIELDS = {
    "marca": ("marca_vehiculo", "marca"),
    "modelo": ("modelo_vehiculo", "modelo"),
    "ano": ("ano_vehiculo", "vehiculo_modelo_ano", "ano"),
    "clase_tipo": ("clase_tipo", "clase", "tipo_vehiculo"),
}

_VIN_KEYS = ("vin", "niv_vin_numero_serie")

_RFC_FIELDS = {"emisor_rfc", "receptor_rfc", "rfc"}


def _first(ocr: dict, keys: tuple) -> Any:
    """Return the first non-empty value for *keys* in *ocr*, else None."""
    for key in keys:
        value = ocr.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        return value
    return None


def _apply(ocr: dict, mapping: dict) -> dict:
    out = {}
    for field_name, keys in mapping.items():
        value = _first(ocr, keys)
        if field_name in _RFC_FIELDS:
            value = normalize_rfc(value)
        elif value is not None and not isinstance(value, str) and field_name != "total":
            value = str(value)
        out[field_name] = value
    return out


def _vehicle(ocr: dict) -> VehicleInfo:
    values = {k: _first(ocr, keys) for k, keys in _VEHICLE_FIELDS.items()}
    return VehicleInfo(**{k: (str(v) if v is not None else None) for k, v in values.items()})


def _as_raw(raw: Any) -> Optional[RawDocument]:
    if isinstance(raw, RawDocument):
        return raw
    if isinstance(raw, dict):
        return RawDocument.from_dict(raw)
    return None


# ═══════════════════════════════════════════════════
# NORMALIZATION
# ═══════════════════════════════════════════════════

def normalize(raw: Any, as_of: Any = None) -> Optional[NormalizedDocument]:
    """Project one raw document onto the canonical shape.

    Returns None for unrecognized kinds (or non-document input); never raises
    on missing fields.  ``as_of`` is only used to compute certificate
    expirations that depend on the query date.
    """
    doc = _as_raw(raw)
    if doc is None:
        return None
    kind = doc.document_type
    ocr = doc.ocr or {}
    base = {
        "file_id": doc.file_id,
        "kind": kind,
        "created_at": doc.created_at,
        "url": doc.url,
        "vin": normalize_rfc(_first(ocr, _VIN_KEYS)),
        "vehiculo": _vehicle(ocr),
    }

    if kind == "invoice":
        fields = _apply(ocr, _INVOICE_FIELDS)
        fields["total"] = parse_amount(fields["total"])
        return NormalizedDocument(**base, **fields)

    if kind == "reinvoice":
        fields = _apply(ocr, _REINVOICE_FIELDS)
        fields["total"] = parse_amount(fields["total"])
        fields["usado_nuevo"] = fields["usado_nuevo"] or "USADO"
        return NormalizedDocument(**base, **fields)

    if kind == "endorsement":
        fields = _apply(ocr, _ENDORSEMENT_FIELDS)
        return NormalizedDocument(**base, **fields)

    if kind == "vehicle_certificate":
        fields = _apply(ocr, _CERTIFICATE_FIELDS)
        cert = NormalizedDocument(**base, **fields, fecha=fields["fecha_expedicion"],
                                  numero_documento=fields["folio"])
        explicit = parse_date(fields["fecha_vigencia"])
        if explicit:
            cert.vencimiento = date_iso(explicit.date())
        else:
            try:
                cert.vencimiento = date_iso(compute_expiration(cert, as_of))
            except (ValueError, OverflowError) as e:
                logger.warning(f"Certificate {cert.file_id}: vencimiento no calculable ({e})")
                cert.vencimiento = None
        return cert

    if kind == "vehicle_cancellation":
        fields = _apply(ocr, _CANCELLATION_FIELDS)
        return NormalizedDocument(**base, **fields, fecha=fields["fecha_baja"],
                                  numero_documento=fields["folio_baja"])

    if kind == "verification":
        fields = _apply(ocr, _VERIFICATION_FIELDS)
        return NormalizedDocument(**base, **fields, fecha=fields["fecha_verificacion"],
                                  numero_documento=fields["folio"])

    logger.debug(f"Normalizer: unrecognized document_type '{kind}' ({doc.file_id})")
    return None


def normalize_all(files: list, as_of: Any = None) -> list[NormalizedDocument]:
    """Normalize a file list, dropping unrecognized kinds."""
    out = []
    for raw in files or []:
        doc = normalize(raw, as_of)
        if doc is not None:
            out.append(doc)
    return out


# ═══════════════════════════════════════════════════
# EXPEDIENTE-LEVEL HELPERS
# ═══════════════════════════════════════════════════

def is_transfer_file(raw: Any) -> bool:
    """Transfer kinds with a usable OCR field bag."""
    if isinstance(raw, RawDocument):
        return raw.document_type in TRANSFER_DOCUMENT_TYPES
    if isinstance(raw, dict):
        return raw.get("document_type") in TRANSFER_DOCUMENT_TYPES and isinstance(raw.get("ocr"), dict)
    return False


def extract_vin(files: list) -> Optional[str]:
    """Reference VIN: the first file (any kind) that carries one."""
    for raw in files or []:
        doc = _as_raw(raw)
        if doc is None:
            continue
        vin = normalize_rfc(_first(doc.ocr, _VIN_KEYS))
        if vin:
            return vin
    return None


def validate_vin_consistency(files: list, reference_vin: Optional[str]) -> dict:
    """Every transfer file carrying a VIN must match *reference_vin*."""
    inconsistencies = []
    for raw in files or []:
        doc = _as_raw(raw)
        if doc is None:
            continue
        vin = normalize_rfc(_first(doc.ocr, _VIN_KEYS))
        if vin and vin != reference_vin:
            inconsistencies.append({
                "file_id": doc.file_id,
                "document_type": doc.document_type,
                "expected_vin": reference_vin,
                "found_vin": vin,
            })
    return {"is_valid": not inconsistencies, "details": inconsistencies}


def find_origin_document(docs: list[NormalizedDocument]) -> Optional[NormalizedDocument]:
    """First document flagged NUEVO/NEW."""
    return next((d for d in docs if d.is_origin), None)


def sort_documents_by_date(docs: list[NormalizedDocument]) -> list[NormalizedDocument]:
    """Stable ascending sort by event date; undated/unparseable documents go last."""
    dated = [d for d in docs if parse_date(d.fecha)]
    undated = [d for d in docs if not parse_date(d.fecha)]
    return sorted(dated, key=lambda d: parse_date(d.fecha)) + undated
