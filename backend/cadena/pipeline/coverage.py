"""Coverage & cross-validation: ownership periods vs. circulation certificates.

The chain says who owned the vehicle and when; certificates say who was
registered with the state and until when.  This module lines the two up.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from cadena.config import NAME_SIMILARITY_THRESHOLD, SEVERITY_LABELS, TRACE_ENABLED
from cadena.pipeline.chain import placed_links
from cadena.pipeline.models import Gap, NormalizedDocument, OwnershipLink, VigenciaVerdict
from cadena.pipeline.state_rules import ValidityModel
from cadena.pipeline.utils import (
    to_date,
    date_iso,
    name_similarity,
    normalize_identifier,
)
from cadena.pipeline.vigencia import evaluate

logger = logging.getLogger(__name__)

_GRACE_DAYS = 30                # time a new owner has to register the vehicle
_JOIN_TOLERANCE_DAYS = 30       # certificate intervals closer than this are merged
_VIGENCIA_GAP_MIN_DAYS = 30
_OUT_OF_PERIOD_TOLERANCE_DAYS = 30
_NAME_SEVERE_THRESHOLD = 0.4


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


# ═══════════════════════════════════════════════════
# OWNER TIMELINE
# ═══════════════════════════════════════════════════

@dataclass
class _OwnerPeriod:
    rfc: str
    nombre: Optional[str]
    inicio: Optional[date]
    fin: Optional[date]          # None while the owner still holds the vehicle
    fecha_inicio: Optional[str]
    fecha_fin: Optional[str]
    es_actual: bool


def _owner_periods(chain: list[OwnershipLink]) -> list[_OwnerPeriod]:
    """One period per distinct receptor, in order of first acquisition.

    A period ends at the first later link whose receptor is someone else;
    the current holder's period is open-ended.
    """
    links = [l for l in placed_links(chain) if l.receptor_rfc]
    if not links:
        return []
    current = links[-1].receptor_rfc

    periods, seen = [], set()
    for i, link in enumerate(links):
        rfc = link.receptor_rfc
        if rfc in seen:
            continue
        seen.add(rfc)
        fecha_fin = None
        if rfc != current:
            nxt = next((l for l in links[i + 1:] if l.receptor_rfc != rfc), None)
            fecha_fin = nxt.fecha if nxt else None
        periods.append(_OwnerPeriod(
            rfc=rfc,
            nombre=link.document.receptor_nombre,
            inicio=to_date(link.fecha),
            fin=to_date(fecha_fin),
            fecha_inicio=link.fecha,
            fecha_fin=fecha_fin,
            es_actual=(rfc == current),
        ))
    return periods


def _certificates_by_rfc(certificates: list[NormalizedDocument]) -> dict[str, list[NormalizedDocument]]:
    grouped: dict[str, list[NormalizedDocument]] = {}
    for cert in certificates:
        key = normalize_identifier(cert.rfc)
        if key:
            grouped.setdefault(key, []).append(cert)
    return grouped


def _best_name_match(nombre: Optional[str], certs: list[NormalizedDocument]):
    """(certificate, similarity) with the highest name similarity; first cert if no names."""
    best, best_score = None, 0.0
    for cert in certs:
        if nombre and cert.nombre:
            score = name_similarity(nombre, cert.nombre)
            if score > best_score:
                best, best_score = cert, score
    if best is None and certs:
        return certs[0], 0.0
    return best, best_score


def _most_recent(certificates: list[NormalizedDocument]) -> Optional[NormalizedDocument]:
    dated = [c for c in certificates if to_date(c.fecha_expedicion)]
    if not dated:
        return certificates[-1] if certificates else None
    return max(dated, key=lambda c: to_date(c.fecha_expedicion))


# ═══════════════════════════════════════════════════
# 1. PROPERTY VALIDATION
# ═══════════════════════════════════════════════════

def _rfc_break(cert: NormalizedDocument, links: list[OwnershipLink]) -> dict:
    """Compare the certificate RFC with the receptor of the latest transfer up to its expedition."""
    expedicion = to_date(cert.fecha_expedicion)
    out = {"ruptura_rfc": False, "razon_ruptura_rfc": None,
           "rfc_factura_reciente": None, "fecha_factura_reciente": None}
    if expedicion is None:
        return out
    prior = [l for l in links if l.receptor_rfc and to_date(l.fecha) and to_date(l.fecha) <= expedicion]
    if not prior:
        return out
    latest = max(prior, key=lambda l: to_date(l.fecha))
    out["rfc_factura_reciente"] = latest.receptor_rfc
    out["fecha_factura_reciente"] = latest.fecha
    if normalize_identifier(cert.rfc) != normalize_identifier(latest.receptor_rfc):
        out["ruptura_rfc"] = True
        out["razon_ruptura_rfc"] = (f"RFC de tarjeta ({cert.rfc}) no coincide con RFC de "
                                    f"factura más reciente ({latest.receptor_rfc})")
    return out


def validate_property_ownership(chain: list[OwnershipLink],
                                certificates: list[NormalizedDocument],
                                as_of: Optional[date] = None) -> dict:
    as_of = as_of or date.today()
    certificates = certificates or []
    periods = _owner_periods(chain)
    by_rfc = _certificates_by_rfc(certificates)

    detalle = []
    con_tarjeta = sin_tarjeta = 0
    current_verdict: Optional[VigenciaVerdict] = None
    current_source = None

    for period in periods:
        certs = by_rfc.get(normalize_identifier(period.rfc), [])
        best, score = _best_name_match(period.nombre, certs)
        vigente_hoy = None
        if certs:
            con_tarjeta += 1
        else:
            sin_tarjeta += 1
        if period.es_actual and best is not None:
            current_verdict = evaluate(best, as_of)
            current_source = "propietario_actual"
            vigente_hoy = current_verdict.vigente
        detalle.append({
            "rfc": period.rfc,
            "nombre_factura": period.nombre,
            "tiene_tarjeta": bool(certs),
            "nombre_tarjeta": best.nombre if best else None,
            "similitud_nombre": round(score, 3) if certs else None,
            "es_propietario_actual": period.es_actual,
            "tarjeta_vigente_hoy": vigente_hoy,
            "estado": best.estado_emisor if best else None,
            "fecha_inicio": period.fecha_inicio,
            "fecha_fin": period.fecha_fin,
        })

    if current_verdict is None and certificates:
        fallback = _most_recent(certificates)
        current_verdict = evaluate(fallback, as_of)
        current_source = "tarjeta_mas_reciente"
        _trace(f"PROPERTY current owner has no certificate; using {fallback.file_id}")

    links = placed_links(chain)
    owners = {normalize_identifier(p.rfc): p for p in periods}
    tarjetas_detalle = []
    for cert in certificates:
        verdict = evaluate(cert, as_of)
        owner = owners.get(normalize_identifier(cert.rfc))
        similitud = None
        if owner and owner.nombre and cert.nombre:
            similitud = round(name_similarity(owner.nombre, cert.nombre), 3)
        tarjetas_detalle.append({
            "file_id": cert.file_id,
            "nombre": cert.nombre,
            "rfc": cert.rfc,
            "estado_emisor": cert.estado_emisor,
            "placa": cert.placa,
            "folio": cert.folio,
            "repuve": cert.repuve,
            "fecha_expedicion": cert.fecha_expedicion,
            "fecha_vigencia": cert.fecha_vigencia or date_iso(verdict.vencimiento),
            "vigente": verdict.vigente,
            "razon_vigencia": verdict.razon,
            "tipo_validacion": verdict.tipo_validacion,
            "tiene_coincidencia": similitud is not None and similitud >= NAME_SIMILARITY_THRESHOLD,
            "similitud_nombre": similitud,
            **_rfc_break(cert, links),
        })

    return {
        "total_propietarios": len(periods),
        "propietarios_con_tarjeta": con_tarjeta,
        "propietarios_sin_tarjeta": sin_tarjeta,
        "propietario_actual": periods[-1].rfc if periods else None,
        "propietario_actual_sin_vigencia": current_verdict is not None and current_verdict.vigente is False,
        "vigencia_propietario_actual": current_verdict.to_dict() if current_verdict else None,
        "fuente_vigencia_actual": current_source,
        "detalle": detalle,
        "tarjetas_detalle": tarjetas_detalle,
    }


# ═══════════════════════════════════════════════════
# 2. VIGENCIA GAPS (certificate to certificate)
# ═══════════════════════════════════════════════════

def _gravedad(days: int) -> str:
    if days > 365:
        return SEVERITY_LABELS["critical"]
    if days > 180:
        return SEVERITY_LABELS["high"]
    return SEVERITY_LABELS["medium"]


def _sorted_by_expedition(certificates: list[NormalizedDocument]) -> list[NormalizedDocument]:
    dated = [c for c in certificates if to_date(c.fecha_expedicion)]
    undated = [c for c in certificates if not to_date(c.fecha_expedicion)]
    return sorted(dated, key=lambda c: to_date(c.fecha_expedicion)) + undated


def detect_vigencia_gaps(certificates: list[NormalizedDocument],
                         as_of: Optional[date] = None) -> dict:
    """Periods longer than 30 days between one card's expiration and the next card."""
    as_of = as_of or date.today()
    ordered = _sorted_by_expedition(certificates or [])

    linea_temporal, gaps = [], []
    dias_sin_cobertura = 0
    for i, cert in enumerate(ordered):
        verdict = evaluate(cert, as_of)
        vencimiento = verdict.vencimiento
        linea_temporal.append({
            "file_id": cert.file_id,
            "estado": cert.estado_emisor,
            "rfc": cert.rfc,
            "fecha_inicio": date_iso(to_date(cert.fecha_expedicion)),
            "fecha_vencimiento": date_iso(vencimiento),
            "vigente": verdict.vigente,
            "vigencia_indefinida": vencimiento is None and verdict.modelo == ValidityModel.INDEFINIDA.value,
        })
        if i + 1 >= len(ordered) or vencimiento is None:
            continue
        nxt = ordered[i + 1]
        siguiente = to_date(nxt.fecha_expedicion)
        if siguiente is None:
            continue
        dias = (siguiente - vencimiento).days
        if dias <= _VIGENCIA_GAP_MIN_DAYS:
            continue
        dias_sin_cobertura += dias
        estados = []
        for e in (cert.estado_emisor or "N/A", nxt.estado_emisor or "N/A"):
            if e not in estados:
                estados.append(e)
        gaps.append({
            "tarjeta_anterior": {"file_id": cert.file_id, "estado": cert.estado_emisor,
                                 "fecha_vencimiento": date_iso(vencimiento)},
            "tarjeta_siguiente": {"file_id": nxt.file_id, "estado": nxt.estado_emisor,
                                  "fecha_expedicion": date_iso(siguiente)},
            "fecha_inicio_gap": date_iso(vencimiento),
            "fecha_fin_gap": date_iso(siguiente),
            "dias_sin_cobertura": dias,
            "estados_involucrados": estados,
            "gravedad": _gravedad(dias),
        })

    return {
        "total_tarjetas": len(ordered),
        "gaps_detectados": len(gaps),
        "dias_sin_cobertura": dias_sin_cobertura,
        "cobertura_completa": not gaps,
        "linea_temporal": linea_temporal,
        "gaps": gaps,
    }


# ═══════════════════════════════════════════════════
# 3. COVERAGE GAPS (owner vs. certificates)
# ═══════════════════════════════════════════════════

def _merge_intervals(intervals: list[tuple[date, date]]) -> list[tuple[date, date]]:
    merged: list[list[date]] = []
    for start, end in sorted(intervals):
        if merged and (start - merged[-1][1]).days <= _JOIN_TOLERANCE_DAYS:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return [(s, e) for s, e in merged]


def _certificate_intervals(certs: list[NormalizedDocument], as_of: date) -> list[tuple[date, date]]:
    intervals = []
    for cert in certs:
        start = to_date(cert.fecha_expedicion)
        if start is None:
            continue
        end = evaluate(cert, as_of).vencimiento or date.max
        intervals.append((start, end))
    return _merge_intervals(intervals)


def _uncovered(start: date, end: date, covered: list[tuple[date, date]]) -> list[tuple[date, date]]:
    """Sub-intervals of [start, end) not inside any of *covered*."""
    holes, cursor = [], start
    for c_start, c_end in covered:
        if c_end < cursor:
            continue
        if c_start >= end:
            break
        if c_start > cursor:
            holes.append((cursor, c_start))
        cursor = max(cursor, c_end)
        if cursor >= end:
            break
    if cursor < end:
        holes.append((cursor, end))
    return holes


def detect_coverage_gaps(chain: list[OwnershipLink],
                         certificates: list[NormalizedDocument],
                         as_of: Optional[date] = None) -> list[Gap]:
    """One ``coverage_gap`` per owner whose period is not fully covered by a certificate."""
    as_of = as_of or date.today()
    by_rfc = _certificates_by_rfc(certificates or [])
    gaps = []

    for period in _owner_periods(chain):
        if period.inicio is None:
            continue
        end = as_of if period.es_actual else period.fin
        if end is None:
            continue
        start = period.inicio + timedelta(days=_GRACE_DAYS)
        if start >= end:
            continue
        covered = _certificate_intervals(by_rfc.get(normalize_identifier(period.rfc), []), as_of)
        holes = _uncovered(start, end, covered)
        if not holes:
            continue
        dias = sum((h_end - h_start).days for h_start, h_end in holes)
        gaps.append(Gap(
            kind="coverage_gap",
            severity="critical" if period.es_actual else "high",
            description=(f"{period.nombre or period.rfc} ({period.rfc}) no tuvo tarjeta de circulación "
                         f"vigente durante {dias} día(s) de su período como propietario"),
            details={
                "type": "PROPIETARIO_SIN_TARJETA_VIGENTE",
                "rfc": period.rfc,
                "nombre": period.nombre,
                "es_propietario_actual": period.es_actual,
                "periodo_inicio": date_iso(period.inicio),
                "periodo_fin": None if period.es_actual else date_iso(period.fin),
                "dias_sin_cobertura": dias,
                "periodos_sin_cobertura": [
                    {"desde": date_iso(s), "hasta": date_iso(e)} for s, e in holes
                ],
            },
        ))

    logger.info(f"Coverage: {len(gaps)} owner(s) without a valid certificate")
    return gaps


# ═══════════════════════════════════════════════════
# 4. CERTIFICATE ANALYSIS
# ═══════════════════════════════════════════════════

def analyze_certificates(chain: list[OwnershipLink],
                         certificates: list[NormalizedDocument],
                         cancellations: Optional[list[NormalizedDocument]] = None,
                         verifications: Optional[list[NormalizedDocument]] = None,
                         as_of: Optional[date] = None) -> dict:
    as_of = as_of or date.today()
    certificates = certificates or []
    cancellations = cancellations or []
    verifications = verifications or []

    detalle, vencidas = [], []
    vigentes = indeterminadas = 0
    for cert in certificates:
        verdict = evaluate(cert, as_of)
        entry = {
            "file_id": cert.file_id,
            "rfc": cert.rfc,
            "nombre": cert.nombre,
            "estado_emisor": cert.estado_emisor,
            "placa": cert.placa,
            "fecha_expedicion": cert.fecha_expedicion,
            **verdict.to_dict(),
        }
        detalle.append(entry)
        if verdict.vigente is True:
            vigentes += 1
        elif verdict.vigente is False:
            vencidas.append(entry)
        else:
            indeterminadas += 1

    gaps = detect_coverage_gaps(chain, certificates, as_of)

    baja_dates = [d for d in (to_date(c.fecha_baja or c.fecha) for c in cancellations) if d]
    verif_dates = [d for d in (to_date(v.fecha_verificacion or v.fecha) for v in verifications) if d]

    return {
        "total_tarjetas": len(certificates),
        "tarjetas_vigentes": vigentes,
        "tarjetas_vencidas": len(vencidas),
        "tarjetas_indeterminadas": indeterminadas,
        "total_gaps": len(gaps),
        "has_gaps": bool(gaps),
        "gaps": gaps,
        "tarjetas_vencidas_detalle": vencidas,
        "tarjetas_detalle": detalle,
        "bajas_vehiculares": {
            "tiene_baja": bool(cancellations),
            "total_bajas": len(cancellations),
            "fecha_ultima_baja": date_iso(max(baja_dates)) if baja_dates else None,
        },
        "verificaciones": {
            "total": len(verifications),
            "fecha_ultima": date_iso(max(verif_dates)) if verif_dates else None,
        },
    }


# ═══════════════════════════════════════════════════
# 5. CROSS-VALIDATION
# ═══════════════════════════════════════════════════

def _inconsistency(tipo: str, gravedad: str, descripcion: str, recomendacion: str,
                   rfc=None, nombre_en_factura=None, nombre_en_tarjeta=None,
                   similitud=None, **extra) -> dict:
    return {
        "tipo": tipo,
        "gravedad": gravedad,
        "descripcion": descripcion,
        "rfc": rfc,
        "nombre_en_factura": nombre_en_factura,
        "nombre_en_tarjeta": nombre_en_tarjeta,
        "similitud": similitud,
        "recomendacion": recomendacion,
        **extra,
    }


def _check_names(periods: list[_OwnerPeriod], by_rfc: dict) -> list[dict]:
    found = []
    for period in periods:
        certs = by_rfc.get(normalize_identifier(period.rfc), [])
        if not period.nombre:
            continue
        named = [c for c in certs if c.nombre]
        if not named:
            continue
        best, score = _best_name_match(period.nombre, named)
        if score >= NAME_SIMILARITY_THRESHOLD:
            continue
        found.append(_inconsistency(
            "NOMBRE_NO_COINCIDE",
            SEVERITY_LABELS["high"] if score < _NAME_SEVERE_THRESHOLD else SEVERITY_LABELS["medium"],
            f"El nombre en factura y en tarjeta no coinciden para el RFC {period.rfc}",
            "Verificar identidad del propietario con identificación oficial",
            rfc=period.rfc,
            nombre_en_factura=period.nombre,
            nombre_en_tarjeta=best.nombre,
            similitud=round(score, 3),
            file_id=best.file_id,
        ))
    return found


def _check_vins(certificates: list[NormalizedDocument]) -> list[dict]:
    vins: dict[str, list[str]] = {}
    for cert in certificates:
        if cert.vin:
            vins.setdefault(cert.vin, []).append(cert.file_id)
    if len(vins) <= 1:
        return []
    return [_inconsistency(
        "VIN_INCONSISTENTE_TARJETAS",
        SEVERITY_LABELS["critical"],
        f"Las tarjetas de circulación reportan {len(vins)} VIN distintos",
        "Confirmar físicamente el número de serie del vehículo",
        vins=sorted(vins),
        documentos={vin: ids for vin, ids in vins.items()},
    )]


def _check_expedition_periods(periods: list[_OwnerPeriod], by_rfc: dict) -> list[dict]:
    found = []
    for period in periods:
        if period.inicio is None:
            continue
        for cert in by_rfc.get(normalize_identifier(period.rfc), []):
            expedicion = to_date(cert.fecha_expedicion)
            if expedicion is None:
                continue
            if expedicion < period.inicio:
                dias, momento = (period.inicio - expedicion).days, "antes de la adquisición"
            elif period.fin is not None and expedicion > period.fin:
                dias, momento = (expedicion - period.fin).days, "después de la venta"
            else:
                continue
            if dias <= _OUT_OF_PERIOD_TOLERANCE_DAYS:
                continue
            found.append(_inconsistency(
                "EXPEDICION_FUERA_DE_PERIODO",
                SEVERITY_LABELS["high"] if dias > 365 else SEVERITY_LABELS["medium"],
                f"Tarjeta expedida {dias} día(s) {momento} de {period.rfc}",
                "Revisar la fecha de expedición contra la factura de adquisición",
                rfc=period.rfc,
                nombre_en_factura=period.nombre,
                nombre_en_tarjeta=cert.nombre,
                file_id=cert.file_id,
                fecha_expedicion=date_iso(expedicion),
                periodo_inicio=date_iso(period.inicio),
                periodo_fin=date_iso(period.fin),
                dias_diferencia=dias,
            ))
    return found


def cross_validate(chain: list[OwnershipLink],
                   certificates: list[NormalizedDocument]) -> dict:
    certificates = certificates or []
    periods = _owner_periods(chain)
    by_rfc = _certificates_by_rfc(certificates)

    inconsistencias = (
        _check_names(periods, by_rfc)
        + _check_vins(certificates)
        + _check_expedition_periods(periods, by_rfc)
    )

    def _n(label: str) -> int:
        return sum(1 for i in inconsistencias if i["gravedad"] == label)

    return {
        "has_inconsistencies": bool(inconsistencias),
        "total_inconsistencies": len(inconsistencias),
        "inconsistencias_criticas": _n(SEVERITY_LABELS["critical"]),
        "inconsistencias_altas": _n(SEVERITY_LABELS["high"]),
        "inconsistencias_medias": _n(SEVERITY_LABELS["medium"]),
        "inconsistencias": inconsistencias,
    }
