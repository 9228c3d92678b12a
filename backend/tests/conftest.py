"""Shared fixtures for the ownership-chain test suite."""

import pytest


VIN = "3VWFE21C04M000001"


# ═══════════════════════════════════════════════════
# Raw document builders (dicts shaped like OCR output)
# ═══════════════════════════════════════════════════

def _invoice(file_id, emisor, receptor, fecha, usado_nuevo="USADO", vin=VIN,
             total=None, kind="invoice", **ocr):
    data = {
        "rfc_emisor": emisor,
        "nombre_emisor": ocr.pop("nombre_emisor", f"EMISOR {emisor}"),
        "rfc_receptor": receptor,
        "nombre_receptor": ocr.pop("nombre_receptor", f"RECEPTOR {receptor}"),
        "usado_nuevo": usado_nuevo,
        "vin": vin,
    }
    if kind == "reinvoice":
        data["fecha_refactura"] = fecha
    else:
        data["fecha_factura"] = fecha
    if total is not None:
        data["total"] = total
    data.update(ocr)
    return {"document_type": kind, "file_id": file_id, "created_at": fecha, "ocr": data}


def _endorsement(file_id, endosante, endosatario, fecha, vin=VIN, **ocr):
    data = {
        "rfc_endosante": endosante,
        "nombre_endosante": f"ENDOSANTE {endosante}",
        "rfc_endosatario": endosatario,
        "nombre_endosatario": f"ENDOSATARIO {endosatario}",
        "fecha_endoso": fecha,
        "vin": vin,
    }
    data.update(ocr)
    return {"document_type": "endorsement", "file_id": file_id, "created_at": fecha, "ocr": data}


def _certificate(file_id, rfc, estado, fecha_expedicion, nombre=None, **ocr):
    data = {
        "rfc": rfc,
        "nombre": nombre or f"TITULAR {rfc}",
        "estado_emisor": estado,
        "fecha_expedicion": fecha_expedicion,
        "placa": "ABC1234",
    }
    data.update(ocr)
    return {"document_type": "vehicle_certificate", "file_id": file_id,
            "created_at": fecha_expedicion, "ocr": data}


@pytest.fixture
def make_invoice():
    return _invoice


@pytest.fixture
def make_endorsement():
    return _endorsement


@pytest.fixture
def make_certificate():
    return _certificate


# ═══════════════════════════════════════════════════
# Expediente fixtures
# ═══════════════════════════════════════════════════

@pytest.fixture
def expediente_basic():
    """NUEVO invoice agency → owner, then a resale and an endorsement."""
    return {
        "created_at": "2024-01-10T10:00:00Z",
        "active_vehicle": True,
        "files": [
            _invoice("f1", "AGE850101AB1", "PEGJ800101AB1", "2018-02-01", usado_nuevo="NUEVO",
                     nombre_emisor="AGENCIA AUTOMOTRIZ DEL NORTE SA DE CV",
                     nombre_receptor="JUAN PEREZ GARCIA", total="$350,000.00"),
            _invoice("f2", "PEGJ800101AB1", "LOMM750505CD2", "2020-05-10",
                     nombre_emisor="JUAN PEREZ GARCIA", nombre_receptor="MARIA LOPEZ MARTINEZ",
                     total="280000"),
            _endorsement("f3", "LOMM750505CD2", "RASC900909EF3", "2022-08-15"),
        ],
    }


@pytest.fixture
def expediente_with_certificate():
    """Single NUEVO sale A→B plus a Sonora card issued to an unrelated RFC C."""
    return {
        "created_at": "2022-04-01T09:00:00Z",
        "files": [
            _invoice("inv-1", "AAAA800101AA1", "BBBB800101BB2", "2017-03-17", usado_nuevo="NUEVO"),
            _certificate("tc-1", "CCCC800101CC3", "SONORA", "2022-03-30"),
        ],
    }
