"""Gap & anomaly detectors over a finished ownership chain.

Four independent passes, each returning a plain dict:
  - validate_document_integrity   RFC format, missing RFCs, impossible dates, origins
  - detect_suspicious_patterns    ping-pong, triangulation, endorsement runs,
                                  over-frequent actors, complex cycles
  - analyze_temporal_anomalies    backward jumps, same-day bursts, long silences
  - detect_duplicates             repeated folios and repeated RFC pairs

Thresholds are module constants.
"""

import logging
from collections import OrderedDict
from datetime import date, timedelta
from typing import Optional

from cadena.config import TRACE_ENABLED
from cadena.pipeline.chain import placed_links
from cadena.pipeline.models import Gap, LinkState, NormalizedDocument, OwnershipLink
from cadena.pipeline.utils import (
    parse_date,
    to_date,
    validate_rfc_format,
    is_agency_name,
    shared_surname,
)

logger = logging.getLogger(__name__)

# ── Pattern thresholds ──
_PING_PONG_MIN_ROUND_TRIPS = 3
_PING_PONG_HIGH_POSITIONS = 8
_DUPLICATE_WINDOW = timedelta(hours=1)
_TRIANGULATION_MAX_DAYS = 30
_TRIANGULATION_CRITICAL_DAYS = 15
_ENDORSEMENT_RUN_MIN = 4
_ENDORSEMENT_RUN_HIGH = 6
_FREQUENT_RFC_MIN = 5
_FREQUENT_RFC_HIGH = 7

# ── Temporal thresholds ──
_BACKWARD_JUMP_DAYS = 30
_BACKWARD_JUMP_HIGH_DAYS = 365
_SAME_DAY_MIN = 3
_SAME_DAY_HIGH = 4
_SAME_DAY_CRITICAL = 5
_LARGE_GAP_YEARS = 3
_LARGE_GAP_HIGH_YEARS = 5

# ── Duplicate thresholds ──
_RFC_PAIR_REPEAT_MIN = 3

_FUTURE_MARGIN = timedelta(days=1)


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


def _count(groups: dict) -> int:
    return sum(len(v) for v in groups.values())


# ═══════════════════════════════════════════════════
# 1. INTEGRITY
# ═══════════════════════════════════════════════════

def validate_document_integrity(documents: list[NormalizedDocument],
                                origin: Optional[NormalizedDocument],
                                as_of: Optional[date] = None) -> dict:
    """Data-quality checks over the date-sorted transfer documents.

    ``is_valid`` is False only for invalid RFCs, invalid dates or more than
    one NUEVO origin; the other findings are warnings.
    """
    as_of = as_of or date.today()
    max_date = as_of + _FUTURE_MARGIN

    invalid_rfcs = []
    missing_rfcs = []
    invalid_dates = []
    name_map: "OrderedDict[str, dict]" = OrderedDict()
    origins = []
    orphan_reinvoices = []
    has_invoice = False

    for idx, doc in enumerate(documents, start=1):
        for field_name, rfc, name in (("rfc_emisor", doc.emisor_rfc, doc.emisor_nombre),
                                      ("rfc_receptor", doc.receptor_rfc, doc.receptor_nombre)):
            if not rfc:
                missing_rfcs.append({"position": idx, "field": field_name,
                                     "document_type": doc.kind, "file_id": doc.file_id})
                continue
            if not validate_rfc_format(rfc):
                invalid_rfcs.append({"position": idx, "rfc": rfc, "field": field_name,
                                     "reason": "Formato de RFC inválido"})
            if name and name.strip():
                entry = name_map.setdefault(rfc, {"names": [], "positions": []})
                if name.strip() not in entry["names"]:
                    entry["names"].append(name.strip())
                if idx not in entry["positions"]:
                    entry["positions"].append(idx)

        if doc.fecha:
            parsed = to_date(doc.fecha)
            if parsed is None:
                invalid_dates.append({"position": idx, "date": doc.fecha,
                                      "reason": "Formato de fecha inválido"})
            elif parsed > max_date:
                invalid_dates.append({"position": idx, "date": doc.fecha,
                                      "reason": "Fecha futura no permitida"})

        if doc.is_origin:
            origins.append((idx, doc))
        if doc.kind == "invoice":
            has_invoice = True
        elif doc.kind == "reinvoice" and not has_invoice:
            orphan_reinvoices.append({"position": idx, "file_id": doc.file_id,
                                      "reason": "Refactura sin factura previa"})

    rfc_name_variations = [
        {"rfc": rfc, "names": data["names"], "positions": data["positions"]}
        for rfc, data in name_map.items() if len(data["names"]) > 1
    ]

    multiple_origins = None
    if len(origins) > 1:
        multiple_origins = {
            "count": len(origins),
            "positions": [i for i, _ in origins],
            "dates": [d.fecha for _, d in origins if d.fecha],
        }

    origin_not_oldest = None
    if origin is not None and documents:
        origin_idx = next((i for i, d in enumerate(documents) if d is origin), -1)
        if origin_idx > 0:
            origin_not_oldest = {
                "origin_position": origin_idx + 1,
                "origin_date": origin.fecha,
                "oldest_position": 1,
                "oldest_date": documents[0].fecha,
            }

    warnings, errors = [], []
    if invalid_rfcs:
        warnings.append(f"{len(invalid_rfcs)} RFC(s) con formato inválido")
    if rfc_name_variations:
        warnings.append(f"{len(rfc_name_variations)} RFC(s) con variaciones de nombre")
    if missing_rfcs:
        warnings.append(f"{len(missing_rfcs)} documento(s) con RFC faltante")
    if invalid_dates:
        errors.append(f"{len(invalid_dates)} fecha(s) inválida(s)")
    if multiple_origins:
        warnings.append(f"Múltiples documentos marcados como origen ({multiple_origins['count']})")
    if orphan_reinvoices:
        warnings.append(f"{len(orphan_reinvoices)} refactura(s) sin factura previa")
    if origin_not_oldest:
        warnings.append("El documento de origen no es el más antiguo")

    return {
        "is_valid": not invalid_rfcs and not invalid_dates and multiple_origins is None,
        "warnings": warnings,
        "errors": errors,
        "details": {
            "invalid_rfcs": invalid_rfcs,
            "rfc_name_variations": rfc_name_variations,
            "missing_rfcs": missing_rfcs,
            "invalid_dates": invalid_dates,
            "multiple_origins": multiple_origins,
            "orphan_reinvoices": orphan_reinvoices,
            "origin_not_oldest": origin_not_oldest,
        },
    }


# ═══════════════════════════════════════════════════
# 2. SUSPICIOUS PATTERNS
# ═══════════════════════════════════════════════════

def _is_administrative_duplicate(prev: OwnershipLink, link: OwnershipLink) -> bool:
    """Same ordered RFC pair plus same vehicle, same folio or issued within an hour."""
    a, b = prev.document, link.document
    if not a.emisor_rfc or (a.emisor_rfc, a.receptor_rfc) != (b.emisor_rfc, b.receptor_rfc):
        return False
    desc_a, desc_b = a.vehiculo.descriptor(), b.vehiculo.descriptor()
    if desc_a and desc_a == desc_b:
        return True
    if a.numero_documento and a.numero_documento == b.numero_documento:
        return True
    ts_a, ts_b = parse_date(a.fecha), parse_date(b.fecha)
    if ts_a and ts_b and abs(ts_b - ts_a) <= _DUPLICATE_WINDOW:
        return True
    return False


def remove_administrative_duplicates(links: list[OwnershipLink]) -> list[OwnershipLink]:
    kept: list[OwnershipLink] = []
    for link in links:
        if kept and _is_administrative_duplicate(kept[-1], link):
            _trace(f"PING_PONG dedup: skipping pos={link.position} ({link.document.file_id})")
            continue
        kept.append(link)
    return kept


def _price_progression(totals: list[Optional[float]]) -> str:
    prices = [t for t in totals if t is not None]
    if len(prices) < 2:
        return "unknown"
    steps = list(zip(prices, prices[1:]))
    if all(abs(b - a) <= 0.01 * max(abs(a), 1.0) for a, b in steps):
        return "flat"
    if all(b > a for a, b in steps):
        return "escalating"
    if all(b < a for a, b in steps):
        return "descending"
    return "irregular"


_PROGRESSION_POINTS = {"escalating": 30, "descending": 20, "flat": 15, "irregular": 10, "unknown": 0}


def _ping_pong_score(round_trips: int, progression: str, surname: Optional[str]) -> int:
    score = min(round_trips, 6) / 6 * 50
    score += _PROGRESSION_POINTS[progression]
    if surname:
        score += 20
    return int(min(100, round(score)))


def _detect_ping_pong(sequential: list[OwnershipLink]) -> list[Gap]:
    links = remove_administrative_duplicates(sequential)
    pairs: "OrderedDict[tuple, dict]" = OrderedDict()
    for current, nxt in zip(links, links[1:]):
        if not current.emisor_rfc or not current.receptor_rfc:
            continue
        if current.emisor_rfc == nxt.receptor_rfc and current.receptor_rfc == nxt.emisor_rfc:
            key = tuple(sorted((current.emisor_rfc, current.receptor_rfc)))
            entry = pairs.setdefault(key, {"links": OrderedDict()})
            entry["links"][current.position] = current
            entry["links"][nxt.position] = nxt

    findings = []
    for (rfc_a, rfc_b), entry in pairs.items():
        involved = sorted(entry["links"].values(), key=lambda l: l.position)
        round_trips = len(involved) // 2
        if round_trips < _PING_PONG_MIN_ROUND_TRIPS:
            continue
        names = {}
        for link in involved:
            names.setdefault(link.emisor_rfc, link.document.emisor_nombre)
            names.setdefault(link.receptor_rfc, link.document.receptor_nombre)
        progression = _price_progression([l.document.total for l in involved])
        surname = shared_surname(names.get(rfc_a), names.get(rfc_b))
        score = _ping_pong_score(round_trips, progression, surname)
        findings.append(Gap(
            kind="pattern_ping_pong",
            severity="high" if len(involved) >= _PING_PONG_HIGH_POSITIONS else "medium",
            description=(f"El vehículo fue transferido {round_trips} veces de ida y vuelta "
                         f"entre {rfc_a} y {rfc_b}"),
            document_ids=[l.document.file_id for l in involved if l.document.file_id],
            details={
                "rfc_a": rfc_a,
                "rfc_b": rfc_b,
                "occurrences": round_trips,
                "positions": [l.position for l in involved],
                "price_progression": progression,
                "shared_surname": surname,
                "score": score,
            },
        ))
    return findings


def _detect_rapid_triangulation(sequential: list[OwnershipLink]) -> list[Gap]:
    findings = []
    for i, first in enumerate(sequential):
        start = to_date(first.fecha)
        if not first.emisor_rfc or start is None:
            continue
        for j in range(i + 2, len(sequential)):
            last = sequential[j]
            if last.receptor_rfc != first.emisor_rfc:
                continue
            end = to_date(last.fecha)
            if end is None:
                continue
            days = abs((end - start).days)
            if days < _TRIANGULATION_MAX_DAYS:
                segment = sequential[i:j + 1]
                cycle = [l.emisor_rfc for l in segment] + [last.receptor_rfc]
                findings.append(Gap(
                    kind="pattern_rapid_triangulation",
                    severity="critical" if days < _TRIANGULATION_CRITICAL_DAYS else "high",
                    description=(f"{first.emisor_rfc} recuperó el vehículo en {days} día(s) "
                                 f"tras pasar por {len(segment) - 1} intermediario(s)"),
                    document_ids=[l.document.file_id for l in segment if l.document.file_id],
                    details={
                        "cycle": cycle,
                        "positions": [l.position for l in segment],
                        "start_date": first.fecha,
                        "end_date": last.fecha,
                        "days_duration": days,
                    },
                ))
    return findings


def _endorsement_run_gap(run: list[OwnershipLink]) -> Gap:
    rfcs = [run[0].emisor_rfc] + [l.receptor_rfc for l in run if l.receptor_rfc]
    return Gap(
        kind="pattern_endorsement_run",
        severity="high" if len(run) >= _ENDORSEMENT_RUN_HIGH else "medium",
        description=f"{len(run)} endosos consecutivos sin factura intermedia",
        document_ids=[l.document.file_id for l in run if l.document.file_id],
        details={
            "start_position": run[0].position,
            "end_position": run[-1].position,
            "chain_length": len(run),
            "rfcs": rfcs,
            "positions": [l.position for l in run],
        },
    )


def _detect_endorsement_runs(sequential: list[OwnershipLink]) -> list[Gap]:
    findings = []
    run: list[OwnershipLink] = []
    for link in sequential + [None]:
        if link is not None and link.state == LinkState.ENDORSEMENT:
            run.append(link)
            continue
        if len(run) >= _ENDORSEMENT_RUN_MIN:
            findings.append(_endorsement_run_gap(run))
        run = []
    return findings


def _detect_frequent_rfcs(sequential: list[OwnershipLink]) -> list[Gap]:
    counts: "OrderedDict[str, dict]" = OrderedDict()
    for link in sequential:
        for rfc, name in ((link.emisor_rfc, link.document.emisor_nombre),
                          (link.receptor_rfc, link.document.receptor_nombre)):
            if not rfc:
                continue
            entry = counts.setdefault(rfc, {"name": name or "", "positions": set(), "is_agency": False})
            entry["positions"].add(link.position)
            if is_agency_name(name):
                entry["is_agency"] = True

    findings = []
    for rfc, entry in counts.items():
        positions = sorted(entry["positions"])
        if len(positions) < _FREQUENT_RFC_MIN or entry["is_agency"]:
            continue
        findings.append(Gap(
            kind="pattern_frequent_rfc",
            severity="high" if len(positions) >= _FREQUENT_RFC_HIGH else "medium",
            description=f"{entry['name'] or rfc} ({rfc}) aparece en {len(positions)} transferencias",
            details={
                "rfc": rfc,
                "name": entry["name"],
                "occurrences": len(positions),
                "positions": positions,
                "is_agency": False,
            },
        ))
    return findings


def _detect_complex_cycles(sequential: list[OwnershipLink]) -> list[Gap]:
    findings = []
    for i, link in enumerate(sequential[:-1]):
        if link.state != LinkState.RETURN:
            continue
        nxt = sequential[i + 1]
        if nxt.receptor_rfc in (link.emisor_rfc, link.receptor_rfc):
            continue
        window = sequential[max(0, i - 2):i + 2]
        sequence = [l.emisor_rfc for l in window if l.emisor_rfc]
        if nxt.receptor_rfc:
            sequence.append(nxt.receptor_rfc)
        findings.append(Gap(
            kind="pattern_complex_cycle",
            severity="medium",
            description="Retorno seguido de transferencia a un tercero",
            document_ids=[l.document.file_id for l in (link, nxt) if l.document.file_id],
            details={
                "sequence": "→".join(sequence),
                "positions": [link.position, nxt.position],
            },
        ))
    return findings


def detect_suspicious_patterns(chain: list[OwnershipLink]) -> dict:
    sequential = placed_links(chain)
    patterns = {
        "ping_pong": _detect_ping_pong(sequential),
        "rapid_triangulation": _detect_rapid_triangulation(sequential),
        "endorsement_chains": _detect_endorsement_runs(sequential),
        "frequent_rfcs": _detect_frequent_rfcs(sequential),
        "complex_cycles": _detect_complex_cycles(sequential),
    }
    count = _count(patterns)
    _trace(f"PATTERNS {({k: len(v) for k, v in patterns.items()})}")
    return {
        "has_suspicious_patterns": count > 0,
        "suspicious_count": count,
        "patterns": patterns,
    }


# ═══════════════════════════════════════════════════
# 3. TEMPORAL ANOMALIES
# ═══════════════════════════════════════════════════

def _detect_backward_jumps(sequential: list[OwnershipLink]) -> list[Gap]:
    findings = []
    for current, nxt in zip(sequential, sequential[1:]):
        a, b = to_date(current.fecha), to_date(nxt.fecha)
        if a is None or b is None:
            continue
        diff = (b - a).days
        if diff < -_BACKWARD_JUMP_DAYS:
            findings.append(Gap(
                kind="temporal_contradiction",
                severity="high" if abs(diff) > _BACKWARD_JUMP_HIGH_DAYS else "medium",
                description=(f"La posición {nxt.position} tiene fecha {nxt.fecha}, "
                             f"{abs(diff)} días antes que la transferencia previa ({current.fecha})"),
                document_ids=[l.document.file_id for l in (current, nxt) if l.document.file_id],
                details={
                    "position": nxt.position,
                    "current_date": nxt.fecha,
                    "previous_date": current.fecha,
                    "days_difference": diff,
                },
            ))
    return findings


def _detect_same_day_transfers(documents: list[NormalizedDocument]) -> list[Gap]:
    groups: "OrderedDict[date, list]" = OrderedDict()
    for idx, doc in enumerate(documents, start=1):
        d = to_date(doc.fecha)
        if d is not None:
            groups.setdefault(d, []).append((idx, doc))

    findings = []
    for day, members in groups.items():
        n = len(members)
        if n < _SAME_DAY_MIN:
            continue
        severity = "critical" if n >= _SAME_DAY_CRITICAL else "high" if n >= _SAME_DAY_HIGH else "medium"
        findings.append(Gap(
            kind="temporal_same_day",
            severity=severity,
            description=f"{n} transferencias el mismo día ({day.isoformat()})",
            document_ids=[d.file_id for _, d in members if d.file_id],
            details={
                "date": day.isoformat(),
                "transfer_count": n,
                "positions": [i for i, _ in members],
            },
        ))
    return findings


def _detect_large_gaps(sequential: list[OwnershipLink]) -> list[Gap]:
    findings = []
    for current, nxt in zip(sequential, sequential[1:]):
        a, b = to_date(current.fecha), to_date(nxt.fecha)
        if a is None or b is None:
            continue
        years = (b - a).days / 365.25
        if years > _LARGE_GAP_YEARS:
            findings.append(Gap(
                kind="temporal_large_gap",
                severity="high" if years > _LARGE_GAP_HIGH_YEARS else "medium",
                description=(f"{years:.1f} años sin transferencias entre las posiciones "
                             f"{current.position} y {nxt.position}"),
                document_ids=[l.document.file_id for l in (current, nxt) if l.document.file_id],
                details={
                    "from_position": current.position,
                    "to_position": nxt.position,
                    "from_date": current.fecha,
                    "to_date": nxt.fecha,
                    "years_difference": round(years, 1),
                },
            ))
    return findings


def analyze_temporal_anomalies(chain: list[OwnershipLink],
                               documents: list[NormalizedDocument]) -> dict:
    sequential = placed_links(chain)
    anomalies = {
        "contradictions": _detect_backward_jumps(sequential),
        "same_day_transfers": _detect_same_day_transfers(documents),
        "large_gaps": _detect_large_gaps(sequential),
    }
    count = _count(anomalies)
    return {
        "has_temporal_anomalies": count > 0,
        "anomaly_count": count,
        "anomalies": anomalies,
    }


# ═══════════════════════════════════════════════════
# 4. DUPLICATES
# ═══════════════════════════════════════════════════

def detect_duplicates(documents: list[NormalizedDocument]) -> dict:
    folio_map: "OrderedDict[str, list]" = OrderedDict()
    pair_map: "OrderedDict[str, list]" = OrderedDict()
    for idx, doc in enumerate(documents, start=1):
        if doc.numero_documento:
            folio_map.setdefault(str(doc.numero_documento).strip(), []).append((idx, doc))
        if doc.emisor_rfc and doc.receptor_rfc:
            pair_map.setdefault(f"{doc.emisor_rfc}→{doc.receptor_rfc}", []).append((idx, doc))

    folios, cross_type, rfc_pairs = [], [], []
    for folio, members in folio_map.items():
        if len(members) < 2:
            continue
        ids = [d.file_id for _, d in members if d.file_id]
        kinds = [d.kind for _, d in members]
        folios.append(Gap(
            kind="duplicate_folio",
            severity="high",
            description=f"El folio {folio} aparece en {len(members)} documentos",
            document_ids=ids,
            details={"folio": folio, "positions": [i for i, _ in members], "types": kinds},
        ))
        if len(set(kinds)) > 1:
            cross_type.append(Gap(
                kind="duplicate_cross_type_folio",
                severity="medium",
                description=f"El folio {folio} aparece en documentos de distinto tipo ({', '.join(sorted(set(kinds)))})",
                document_ids=ids,
                details={
                    "folio": folio,
                    "documents": [{"position": i, "type": d.kind} for i, d in members],
                },
            ))

    for pair, members in pair_map.items():
        if len(members) >= _RFC_PAIR_REPEAT_MIN:
            rfc_pairs.append(Gap(
                kind="duplicate_rfc_pair",
                severity="medium",
                description=f"La transferencia {pair} se repite {len(members)} veces",
                document_ids=[d.file_id for _, d in members if d.file_id],
                details={"pair": pair, "occurrences": len(members),
                         "positions": [i for i, _ in members]},
            ))

    duplicates = {"folios": folios, "cross_type_folios": cross_type, "rfc_pairs": rfc_pairs}
    count = _count(duplicates)
    return {
        "has_duplicates": count > 0,
        "duplicate_count": count,
        "duplicates": duplicates,
    }
