"""Tests for backend/cadena/pipeline/detectors.py: integrity, patterns, temporal, duplicates."""

from datetime import date

from cadena.pipeline.chain import build_ownership_chain
from cadena.pipeline.detectors import (
    analyze_temporal_anomalies,
    detect_duplicates,
    detect_suspicious_patterns,
    remove_administrative_duplicates,
    validate_document_integrity,
)
from cadena.pipeline.models import LinkState, NormalizedDocument, OwnershipLink


# ═══════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════

_NAMES = {
    "A": "JUAN PEREZ GARCIA",
    "B": "MARIA PEREZ LOPEZ",
    "C": "CARLOS RUIZ SOTO",
    "D": "ANA TORRES DIAZ",
    "E": "LUIS NAVA ORTIZ",
    "X": "AGENCIA FORD DEL VALLE SA DE CV",
    "AGE": "AGENCIA FORD DEL VALLE SA DE CV",
    "P": "PEDRO RAMIREZ LUNA",
}


def _doc(fid, emisor, receptor, fecha, kind="invoice", nuevo=False, **kw):
    return NormalizedDocument(
        file_id=fid, kind=kind, fecha=fecha,
        emisor_rfc=emisor, receptor_rfc=receptor,
        emisor_nombre=_NAMES.get(emisor, emisor), receptor_nombre=_NAMES.get(receptor, receptor),
        usado_nuevo="NUEVO" if nuevo else "USADO", **kw,
    )


def _chain(docs):
    origin = next(d for d in docs if d.is_origin)
    return build_ownership_chain(docs, origin)


def _links(*pairs):
    """Hand-built placed chain from (emisor, receptor, fecha) tuples."""
    return [
        OwnershipLink(_doc(f"f{i}", e, r, f, nuevo=(i == 1)), LinkState.OK, i, i == 1)
        for i, (e, r, f) in enumerate(pairs, start=1)
    ]


def _ping_pong_docs(duplicate_minutes_later=None):
    docs = [
        _doc("f1", "X", "A", "2020-01-01T10:00:00", nuevo=True),
        _doc("f2", "A", "B", "2020-02-01T10:00:00"),
        _doc("f3", "B", "A", "2020-03-01T10:00:00"),
    ]
    if duplicate_minutes_later is not None:
        docs.append(_doc("f4", "B", "A", f"2020-03-01T10:{duplicate_minutes_later:02d}:00"))
    else:
        docs.append(_doc("f4", "B", "A", "2020-03-15T10:00:00"))
    docs += [
        _doc("f5", "A", "B", "2020-04-01T10:00:00"),
        _doc("f6", "B", "A", "2020-05-01T10:00:00"),
        _doc("f7", "A", "B", "2020-06-01T10:00:00"),
    ]
    return docs


# ═══════════════════════════════════════════════════
# 1. Integrity
# ═══════════════════════════════════════════════════

class TestIntegrity:

    def test_clean_documents(self):
        docs = [
            _doc("f1", "AGE850101AB1", "PEGJ800101AB1", "2018-01-01", nuevo=True),
            _doc("f2", "PEGJ800101AB1", "LOMM750505CD2", "2019-01-01"),
        ]
        result = validate_document_integrity(docs, docs[0], date(2024, 1, 1))
        assert result["is_valid"]
        assert result["warnings"] == []
        assert result["errors"] == []

    def test_invalid_and_missing_rfcs(self):
        docs = [
            _doc("f1", "AGE850101AB1", "XYZ", "2018-01-01", nuevo=True),
            _doc("f2", "XYZ", None, "2019-01-01"),
        ]
        result = validate_document_integrity(docs, docs[0], date(2024, 1, 1))
        assert not result["is_valid"]
        assert len(result["details"]["invalid_rfcs"]) == 2
        assert result["details"]["missing_rfcs"][0]["field"] == "rfc_receptor"
        assert "2 RFC(s) con formato inválido" in result["warnings"]

    def test_future_and_unparseable_dates(self):
        docs = [
            _doc("f1", "AGE850101AB1", "PEGJ800101AB1", "2024-01-05", nuevo=True),
            _doc("f2", "PEGJ800101AB1", "LOMM750505CD2", "fecha ilegible"),
        ]
        result = validate_document_integrity(docs, docs[0], date(2024, 1, 1))
        assert not result["is_valid"]
        reasons = {d["reason"] for d in result["details"]["invalid_dates"]}
        assert reasons == {"Fecha futura no permitida", "Formato de fecha inválido"}
        assert result["errors"] == ["2 fecha(s) inválida(s)"]

    def test_next_day_tolerated(self):
        docs = [_doc("f1", "AGE850101AB1", "PEGJ800101AB1", "2024-01-02", nuevo=True)]
        assert validate_document_integrity(docs, docs[0], date(2024, 1, 1))["is_valid"]

    def test_multiple_origins(self):
        docs = [
            _doc("f1", "AGE850101AB1", "PEGJ800101AB1", "2018-01-01", nuevo=True),
            _doc("f2", "AGE850101AB1", "LOMM750505CD2", "2019-01-01", nuevo=True),
        ]
        result = validate_document_integrity(docs, docs[0], date(2024, 1, 1))
        assert not result["is_valid"]
        assert result["details"]["multiple_origins"]["positions"] == [1, 2]

    def test_orphan_reinvoice_and_origin_not_oldest(self):
        docs = [
            _doc("f1", "PEGJ800101AB1", "LOMM750505CD2", "2017-01-01", kind="reinvoice"),
            _doc("f2", "AGE850101AB1", "PEGJ800101AB1", "2018-01-01", nuevo=True),
        ]
        result = validate_document_integrity(docs, docs[1], date(2024, 1, 1))
        assert result["is_valid"]
        assert len(result["details"]["orphan_reinvoices"]) == 1
        assert result["details"]["origin_not_oldest"]["origin_position"] == 2
        assert "El documento de origen no es el más antiguo" in result["warnings"]

    def test_name_variations(self):
        docs = [
            _doc("f1", "AGE850101AB1", "PEGJ800101AB1", "2018-01-01", nuevo=True),
            NormalizedDocument(file_id="f2", kind="invoice", fecha="2019-01-01",
                               emisor_rfc="PEGJ800101AB1", emisor_nombre="J. PEREZ",
                               receptor_rfc="LOMM750505CD2", receptor_nombre="MARIA LOPEZ"),
        ]
        variations = validate_document_integrity(docs, docs[0], date(2024, 1, 1))["details"]["rfc_name_variations"]
        assert variations[0]["rfc"] == "PEGJ800101AB1"
        assert variations[0]["positions"] == [1, 2]


# ═══════════════════════════════════════════════════
# 2. Suspicious patterns
# ═══════════════════════════════════════════════════

class TestPingPong:

    def test_three_round_trips_flagged(self):
        chain = _chain(_ping_pong_docs())
        found = detect_suspicious_patterns(chain)["patterns"]["ping_pong"]
        assert len(found) == 1
        assert found[0].details["occurrences"] == 3
        assert found[0].details["positions"] == [2, 3, 4, 5, 6, 7]
        assert found[0].severity == "medium"

    def test_administrative_duplicate_suppressed(self):
        """A re-issued document 10 minutes later is not another round trip."""
        chain = _chain(_ping_pong_docs(duplicate_minutes_later=10))
        assert len([l for l in chain if l.placed]) == 7
        assert detect_suspicious_patterns(chain)["patterns"]["ping_pong"] == []

    def test_dedup_keeps_distinct_links(self):
        chain = _chain(_ping_pong_docs(duplicate_minutes_later=10))
        kept = remove_administrative_duplicates([l for l in chain if l.placed])
        assert [l.document.file_id for l in kept] == ["f1", "f2", "f3", "f5", "f6", "f7"]

    def test_same_folio_is_duplicate(self):
        links = _links(("A", "B", "2020-01-01"), ("A", "B", "2021-01-01"))
        links[0].document.numero_documento = "F-1"
        links[1].document.numero_documento = "F-1"
        assert len(remove_administrative_duplicates(links)) == 1

    def test_score_with_shared_surname(self):
        chain = _chain(_ping_pong_docs())
        finding = detect_suspicious_patterns(chain)["patterns"]["ping_pong"][0]
        assert finding.details["shared_surname"] == "PEREZ"
        assert finding.details["price_progression"] == "unknown"
        assert finding.details["score"] == 45

    def test_escalating_prices(self):
        docs = _ping_pong_docs()
        for i, d in enumerate(docs):
            d.total = 100000.0 + i * 10000
        finding = detect_suspicious_patterns(_chain(docs))["patterns"]["ping_pong"][0]
        assert finding.details["price_progression"] == "escalating"
        assert finding.details["score"] == 75


class TestOtherPatterns:

    def test_rapid_triangulation_critical(self):
        chain = _chain([
            _doc("f1", "X", "A", "2020-01-01", nuevo=True),
            _doc("f2", "A", "B", "2020-01-05"),
            _doc("f3", "B", "C", "2020-01-10"),
            _doc("f4", "C", "A", "2020-01-15"),
        ])
        found = detect_suspicious_patterns(chain)["patterns"]["rapid_triangulation"]
        assert len(found) == 1
        assert found[0].severity == "critical"
        assert found[0].details["cycle"] == ["A", "B", "C", "A"]
        assert found[0].details["days_duration"] == 10

    def test_rapid_triangulation_high(self):
        chain = _chain([
            _doc("f1", "X", "A", "2020-01-01", nuevo=True),
            _doc("f2", "A", "B", "2020-01-05"),
            _doc("f3", "B", "C", "2020-01-10"),
            _doc("f4", "C", "A", "2020-01-25"),
        ])
        found = detect_suspicious_patterns(chain)["patterns"]["rapid_triangulation"]
        assert found[0].severity == "high"

    def test_rapid_triangulation_every_closer_reported(self):
        chain = _chain([
            _doc("f1", "X", "A", "2020-01-01", nuevo=True),
            _doc("f2", "A", "B", "2020-01-05"),
            _doc("f3", "B", "C", "2020-01-08"),
            _doc("f4", "C", "A", "2020-01-11"),
            _doc("f5", "A", "D", "2020-01-13"),
            _doc("f6", "D", "A", "2020-01-16"),
        ])
        found = detect_suspicious_patterns(chain)["patterns"]["rapid_triangulation"]
        assert [f.details["positions"] for f in found] == [[2, 3, 4], [2, 3, 4, 5, 6]]
        assert [f.details["days_duration"] for f in found] == [6, 11]
        assert found[1].details["cycle"] == ["A", "B", "C", "A", "D", "A"]

    def test_slow_cycle_not_triangulation(self):
        chain = _chain([
            _doc("f1", "X", "A", "2020-01-01", nuevo=True),
            _doc("f2", "A", "B", "2020-03-01"),
            _doc("f3", "B", "A", "2020-06-01"),
        ])
        assert detect_suspicious_patterns(chain)["patterns"]["rapid_triangulation"] == []

    def test_endorsement_run(self):
        chain = _chain([
            _doc("f1", "X", "A", "2020-01-01", nuevo=True),
            _doc("f2", "A", "B", "2020-02-01", kind="endorsement"),
            _doc("f3", "B", "C", "2020-03-01", kind="endorsement"),
            _doc("f4", "C", "D", "2020-04-01", kind="endorsement"),
            _doc("f5", "D", "E", "2020-05-01", kind="endorsement"),
        ])
        found = detect_suspicious_patterns(chain)["patterns"]["endorsement_chains"]
        assert len(found) == 1
        assert found[0].details["chain_length"] == 4
        assert found[0].severity == "medium"

    def test_short_endorsement_run_ignored(self):
        chain = _chain([
            _doc("f1", "X", "A", "2020-01-01", nuevo=True),
            _doc("f2", "A", "B", "2020-02-01", kind="endorsement"),
            _doc("f3", "B", "C", "2020-03-01", kind="endorsement"),
            _doc("f4", "C", "D", "2020-04-01", kind="endorsement"),
        ])
        assert detect_suspicious_patterns(chain)["patterns"]["endorsement_chains"] == []

    def _hub_chain(self, hub):
        return _chain([
            _doc("f1", hub, "A", "2020-01-01", nuevo=True),
            _doc("f2", "A", hub, "2020-02-01"),
            _doc("f3", hub, "B", "2020-03-01"),
            _doc("f4", "B", hub, "2020-04-01"),
            _doc("f5", hub, "C", "2020-05-01"),
        ])

    def test_frequent_rfc(self):
        found = detect_suspicious_patterns(self._hub_chain("P"))["patterns"]["frequent_rfcs"]
        assert [f.details["rfc"] for f in found] == ["P"]
        assert found[0].details["occurrences"] == 5

    def test_agency_not_frequent(self):
        found = detect_suspicious_patterns(self._hub_chain("AGE"))["patterns"]["frequent_rfcs"]
        assert found == []

    def test_complex_cycle(self):
        chain = _chain([
            _doc("f1", "X", "A", "2020-01-01", nuevo=True),
            _doc("f2", "A", "B", "2020-02-01"),
            _doc("f3", "A", "C", "2020-03-01"),
            _doc("f4", "C", "D", "2020-04-01"),
        ])
        result = detect_suspicious_patterns(chain)
        found = result["patterns"]["complex_cycles"]
        assert len(found) == 1
        assert found[0].details["positions"] == [3, 4]
        assert result["has_suspicious_patterns"]


# ═══════════════════════════════════════════════════
# 3. Temporal anomalies
# ═══════════════════════════════════════════════════

class TestTemporal:

    def test_backward_jump(self):
        chain = _links(("X", "A", "2020-06-01"), ("A", "B", "2020-01-01"))
        found = analyze_temporal_anomalies(chain, [])["anomalies"]["contradictions"]
        assert len(found) == 1
        assert found[0].severity == "medium"
        assert found[0].details["days_difference"] == -152

    def test_backward_jump_over_a_year(self):
        chain = _links(("X", "A", "2022-06-01"), ("A", "B", "2020-01-01"))
        found = analyze_temporal_anomalies(chain, [])["anomalies"]["contradictions"]
        assert found[0].severity == "high"

    def test_small_backward_jump_tolerated(self):
        chain = _links(("X", "A", "2020-01-20"), ("A", "B", "2020-01-01"))
        assert analyze_temporal_anomalies(chain, [])["anomalies"]["contradictions"] == []

    def test_same_day_burst(self):
        docs = [_doc(f"f{i}", "A", "B", "2021-05-05") for i in range(3)]
        found = analyze_temporal_anomalies([], docs)["anomalies"]["same_day_transfers"]
        assert found[0].severity == "medium"
        assert found[0].details["transfer_count"] == 3

    def test_same_day_burst_critical(self):
        docs = [_doc(f"f{i}", "A", "B", "2021-05-05T0{i}:00:00") for i in range(5)]
        found = analyze_temporal_anomalies([], docs)["anomalies"]["same_day_transfers"]
        assert found[0].severity == "critical"

    def test_large_gaps(self):
        chain = _links(("X", "A", "2010-01-01"), ("A", "B", "2014-01-01"), ("B", "C", "2020-06-01"))
        result = analyze_temporal_anomalies(chain, [])
        gaps = result["anomalies"]["large_gaps"]
        assert [g.severity for g in gaps] == ["medium", "high"]
        assert result["anomaly_count"] == 2
        assert result["has_temporal_anomalies"]


# ═══════════════════════════════════════════════════
# 4. Duplicates
# ═══════════════════════════════════════════════════

class TestDuplicates:

    def test_repeated_folio_across_types(self):
        docs = [
            _doc("f1", "A", "B", "2020-01-01", numero_documento="123"),
            _doc("f2", "B", "C", "2021-01-01", kind="endorsement", numero_documento="123"),
        ]
        result = detect_duplicates(docs)
        dup = result["duplicates"]
        assert dup["folios"][0].details["positions"] == [1, 2]
        assert dup["cross_type_folios"][0].details["folio"] == "123"
        assert result["duplicate_count"] == 2

    def test_same_type_folio_not_cross_type(self):
        docs = [
            _doc("f1", "A", "B", "2020-01-01", numero_documento="9"),
            _doc("f2", "B", "C", "2021-01-01", numero_documento="9"),
        ]
        assert detect_duplicates(docs)["duplicates"]["cross_type_folios"] == []

    def test_repeated_rfc_pair(self):
        docs = [_doc(f"f{i}", "A", "B", f"202{i}-01-01") for i in range(3)]
        pairs = detect_duplicates(docs)["duplicates"]["rfc_pairs"]
        assert pairs[0].details["pair"] == "A→B"
        assert pairs[0].details["occurrences"] == 3

    def test_no_duplicates(self):
        docs = [_doc("f1", "A", "B", "2020-01-01"), _doc("f2", "B", "C", "2021-01-01")]
        assert not detect_duplicates(docs)["has_duplicates"]
