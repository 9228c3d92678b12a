"""Tests for backend/cadena/pipeline/normalizer.py: raw OCR → canonical documents."""

from cadena.pipeline.models import NormalizedDocument, RawDocument
from cadena.pipeline.normalizer import (
    extract_vin,
    find_origin_document,
    is_transfer_file,
    normalize,
    normalize_all,
    sort_documents_by_date,
    validate_vin_consistency,
)


# ═══════════════════════════════════════════════════
# 1. Per-kind field mapping
# ═══════════════════════════════════════════════════

class TestNormalizeTransfers:

    def test_invoice_fields(self, make_invoice):
        raw = make_invoice("f1", " age850101ab1 ", "PEGJ800101AB1", "2018-02-01",
                           usado_nuevo="NUEVO", total="$350,000.00",
                           marca_vehiculo="Volkswagen", modelo_vehiculo="Jetta", ano_vehiculo=2018)
        doc = normalize(raw)
        assert doc.kind == "invoice"
        assert doc.fecha == "2018-02-01"
        assert doc.emisor_rfc == "AGE850101AB1"
        assert doc.total == 350000.0
        assert doc.is_origin
        assert doc.vehiculo.ano == "2018"
        assert doc.vehiculo.descriptor() == "VOLKSWAGEN JETTA 2018"

    def test_invoice_falls_back_to_emission_timestamp(self):
        raw = {"document_type": "invoice", "ocr": {"fecha_hora_emision": "2020-01-01T10:00:00",
                                                   "folio_fiscal": "UUID-1"}}
        doc = normalize(raw)
        assert doc.fecha == "2020-01-01T10:00:00"
        assert doc.numero_documento == "UUID-1"

    def test_reinvoice_defaults_to_used(self, make_invoice):
        doc = normalize(make_invoice("r1", "A", "B", "2021-01-01", usado_nuevo=None, kind="reinvoice"))
        assert doc.kind == "reinvoice"
        assert doc.fecha == "2021-01-01"
        assert doc.usado_nuevo == "USADO"

    def test_endorsement_fields(self, make_endorsement):
        doc = normalize(make_endorsement("e1", "LOMM750505CD2", "RASC900909EF3", "2022-08-15"))
        assert doc.emisor_rfc == "LOMM750505CD2"
        assert doc.receptor_rfc == "RASC900909EF3"
        assert doc.fecha == "2022-08-15"
        assert doc.total is None

    def test_missing_ocr_does_not_raise(self):
        doc = normalize({"document_type": "invoice", "file_id": "x"})
        assert doc.emisor_rfc is None
        assert doc.fecha is None


class TestNormalizeRegistryDocuments:

    def test_certificate_computes_expiration(self, make_certificate):
        doc = normalize(make_certificate("tc1", "CCCC800101CC3", "SONORA", "2022-03-30", folio="F-9"),
                        as_of="2022-06-01")
        assert doc.fecha == "2022-03-30"
        assert doc.numero_documento == "F-9"
        assert doc.vencimiento == "2022-12-31"

    def test_certificate_explicit_expiration(self, make_certificate):
        doc = normalize(make_certificate("tc1", "C", "CDMX", "2020-01-01", fecha_vigencia="31/12/2026"))
        assert doc.vencimiento == "2026-12-31"

    def test_certificate_expedition_near_date_max(self, make_certificate):
        doc = normalize(make_certificate("tc1", "C", "QUERETARO", "9999-06-01"), as_of="2024-01-01")
        assert doc.fecha == "9999-06-01"
        assert doc.vencimiento is None

    def test_certificate_expiration_error_leaves_vencimiento_empty(self, make_certificate, monkeypatch):
        def overflow(*args, **kwargs):
            raise OverflowError("date value out of range")

        monkeypatch.setattr("cadena.pipeline.normalizer.compute_expiration", overflow)
        doc = normalize(make_certificate("tc1", "C", "SONORA", "2022-03-30"), as_of="2022-06-01")
        assert doc.vencimiento is None
        assert doc.fecha == "2022-03-30"

    def test_cancellation(self):
        doc = normalize({"document_type": "vehicle_cancellation",
                         "ocr": {"fecha_baja": "2023-02-02", "folio_baja": "B-1", "estado": "Jalisco"}})
        assert doc.fecha == "2023-02-02"
        assert doc.numero_documento == "B-1"
        assert doc.estado_emisor == "Jalisco"

    def test_verification(self):
        doc = normalize({"document_type": "verification",
                         "ocr": {"fecha_verificacion": "2023-05-05", "resultado": "APROBADO"}})
        assert doc.fecha == "2023-05-05"
        assert doc.resultado == "APROBADO"

    def test_unrecognized_kind(self):
        assert normalize({"document_type": "poliza_seguro", "ocr": {}}) is None

    def test_non_document_input(self):
        assert normalize("basura") is None

    def test_normalize_all_drops_unknown(self, make_invoice):
        docs = normalize_all([make_invoice("f1", "A", "B", "2020-01-01"),
                              {"document_type": "otro", "ocr": {}}])
        assert [d.file_id for d in docs] == ["f1"]


# ═══════════════════════════════════════════════════
# 2. Expediente helpers
# ═══════════════════════════════════════════════════

class TestExpedienteHelpers:

    def test_transfer_file_requires_ocr_dict(self):
        assert is_transfer_file({"document_type": "invoice", "ocr": {}})
        assert not is_transfer_file({"document_type": "invoice", "ocr": "texto"})
        assert not is_transfer_file({"document_type": "vehicle_certificate", "ocr": {}})

    def test_transfer_file_raw_document(self):
        assert is_transfer_file(RawDocument(document_type="endorsement"))

    def test_extract_vin_first_carrier(self):
        files = [
            {"document_type": "vehicle_certificate", "ocr": {"niv_vin_numero_serie": " 3vw123 "}},
            {"document_type": "invoice", "ocr": {"vin": "OTHER"}},
        ]
        assert extract_vin(files) == "3VW123"

    def test_extract_vin_none(self):
        assert extract_vin([{"document_type": "invoice", "ocr": {}}]) is None

    def test_vin_consistency(self, make_invoice):
        files = [make_invoice("f1", "A", "B", "2020-01-01"),
                 make_invoice("f2", "B", "C", "2021-01-01", vin="OTRO-VIN")]
        result = validate_vin_consistency(files, extract_vin(files))
        assert not result["is_valid"]
        assert result["details"][0]["file_id"] == "f2"
        assert result["details"][0]["found_vin"] == "OTRO-VIN"

    def test_find_origin(self):
        docs = [NormalizedDocument(file_id="a", kind="invoice", usado_nuevo="USADO"),
                NormalizedDocument(file_id="b", kind="invoice", usado_nuevo="nuevo")]
        assert find_origin_document(docs).file_id == "b"

    def test_sort_undated_last_and_stable(self):
        docs = [
            NormalizedDocument(file_id="undated", kind="invoice"),
            NormalizedDocument(file_id="late", kind="invoice", fecha="2021-01-01"),
            NormalizedDocument(file_id="early", kind="invoice", fecha="15/03/2019"),
            NormalizedDocument(file_id="garbage", kind="invoice", fecha="ayer"),
        ]
        assert [d.file_id for d in sort_documents_by_date(docs)] == ["early", "late", "undated", "garbage"]
