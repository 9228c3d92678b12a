"""Executive summary: one risk level plus ranked recommendations.

Consumes the raw sub-analysis outputs (Gap records not yet serialized) and
never fails on a missing section; absent analyses just contribute nothing.
"""

import logging
from typing import Optional

from cadena.config import RISK_LEVELS, SEVERITY_LABELS, SEVERITY_ORDER
from cadena.pipeline.models import Gap

logger = logging.getLogger(__name__)

_LABEL_TO_SEVERITY = {v: k for k, v in SEVERITY_LABELS.items()}
_PRIORITY_ORDER = {SEVERITY_LABELS[k]: rank for k, rank in SEVERITY_ORDER.items()}


def _severity(item) -> Optional[str]:
    if isinstance(item, Gap):
        return item.severity
    if isinstance(item, dict):
        if "severity" in item:
            return item["severity"]
        return _LABEL_TO_SEVERITY.get(item.get("gravedad"))
    return None


def _grouped(section: Optional[dict], key: str) -> list:
    """Flatten a ``{category: [findings]}`` block."""
    if not section:
        return []
    return [f for findings in (section.get(key) or {}).values() for f in findings]


def _recommendation(prioridad: str, tipo: str, mensaje: str, acciones: list[str]) -> dict:
    return {"prioridad": prioridad, "tipo": tipo, "mensaje": mensaje, "acciones": acciones}


def _risk_level(critical: int, high: int, medium: int, expired: int) -> str:
    if critical > 0:
        return "critical"
    if high > 1 or expired > 2:
        return "high"
    if high > 0 or expired > 0 or medium > 3:
        return "medium"
    return "low"


def build_executive_summary(sequence: dict,
                            integrity: Optional[dict] = None,
                            patterns: Optional[dict] = None,
                            temporal: Optional[dict] = None,
                            duplicates: Optional[dict] = None,
                            certificates: Optional[dict] = None,
                            vigencia_gaps: Optional[dict] = None,
                            cross: Optional[dict] = None,
                            property_validation: Optional[dict] = None) -> dict:
    sequence_gaps = sequence.get("gaps", [])
    pattern_findings = _grouped(patterns, "patterns")
    temporal_findings = _grouped(temporal, "anomalies")
    duplicate_findings = _grouped(duplicates, "duplicates")
    coverage_gaps = (certificates or {}).get("gaps", [])
    card_gaps = (vigencia_gaps or {}).get("gaps", [])
    inconsistencies = (cross or {}).get("inconsistencias", [])

    findings = (sequence_gaps + pattern_findings + temporal_findings + duplicate_findings
                + coverage_gaps + card_gaps + inconsistencies)
    severities = [_severity(f) for f in findings]
    if integrity:
        severities += ["high"] * len(integrity.get("errors", []))
        severities += ["low"] * len(integrity.get("warnings", []))

    critical = severities.count("critical")
    high = severities.count("high")
    medium = severities.count("medium")
    expired = (certificates or {}).get("tarjetas_vencidas", 0)
    current_expired = bool((property_validation or {}).get("propietario_actual_sin_vigencia"))

    nivel = _risk_level(critical, high, medium, expired)

    recs = []
    if current_expired:
        recs.append(_recommendation(
            "CRITICA", "TARJETA_VENCIDA_PROPIETARIO_ACTUAL",
            "La tarjeta de circulación del propietario actual no está vigente",
            ["Solicitar refrendo o reemplacamiento", "Verificar adeudos vehiculares en el estado emisor"],
        ))
    current_uncovered = [g for g in coverage_gaps if _severity(g) == "critical"]
    if current_uncovered:
        recs.append(_recommendation(
            "CRITICA", "PROPIETARIO_SIN_TARJETA",
            "El propietario actual no cuenta con tarjeta de circulación que cubra su período",
            ["Solicitar tarjeta de circulación a nombre del propietario actual"],
        ))
    vin_issues = [i for i in inconsistencies if i.get("tipo") == "VIN_INCONSISTENTE_TARJETAS"]
    if vin_issues:
        recs.append(_recommendation(
            "CRITICA", "VIN_INCONSISTENTE",
            "Las tarjetas de circulación reportan números de serie distintos",
            ["Cotejar físicamente el VIN", "Consultar REPUVE"],
        ))
    if sequence_gaps:
        recs.append(_recommendation(
            "ALTA", "SECUENCIA_INCOMPLETA",
            f"Se detectaron {len(sequence_gaps)} ruptura(s) en la cadena de propiedad",
            ["Solicitar facturas o endosos faltantes", "Validar documentos fuera de secuencia"],
        ))
    historical_uncovered = [g for g in coverage_gaps if _severity(g) == "high"]
    if historical_uncovered:
        recs.append(_recommendation(
            "ALTA", "PROPIETARIOS_SIN_TARJETA",
            f"{len(historical_uncovered)} propietario(s) anterior(es) sin tarjeta vigente durante su período",
            ["Solicitar tarjetas de circulación históricas"],
        ))
    if pattern_findings:
        worst = "CRITICA" if any(_severity(p) == "critical" for p in pattern_findings) else "ALTA"
        recs.append(_recommendation(
            worst, "PATRON_SOSPECHOSO",
            f"Se detectaron {len(pattern_findings)} patrón(es) sospechoso(s) en las transferencias",
            ["Revisar a detalle las transferencias señaladas", "Verificar relación entre las partes"],
        ))
    other_inconsistencies = [i for i in inconsistencies if i.get("tipo") != "VIN_INCONSISTENTE_TARJETAS"]
    if other_inconsistencies:
        worst = min((i["gravedad"] for i in other_inconsistencies), key=lambda g: _PRIORITY_ORDER.get(g, 9))
        recs.append(_recommendation(
            worst, "INCONSISTENCIA_DATOS",
            f"{len(other_inconsistencies)} inconsistencia(s) entre facturas y tarjetas",
            ["Cotejar nombres y fechas con identificación oficial"],
        ))
    if card_gaps:
        worst = min((g["gravedad"] for g in card_gaps), key=lambda g: _PRIORITY_ORDER.get(g, 9))
        recs.append(_recommendation(
            worst, "HUECO_DE_VIGENCIA",
            f"{len(card_gaps)} período(s) sin tarjeta de circulación vigente",
            ["Solicitar comprobantes de refrendo de los períodos sin cobertura"],
        ))
    if expired and not current_expired:
        recs.append(_recommendation(
            "MEDIA", "TARJETAS_VENCIDAS",
            f"{expired} tarjeta(s) de circulación vencida(s)",
            ["Confirmar que existe una tarjeta posterior vigente"],
        ))
    if temporal_findings:
        recs.append(_recommendation(
            "MEDIA", "ANOMALIA_TEMPORAL",
            f"{len(temporal_findings)} anomalía(s) temporal(es) en las fechas de transferencia",
            ["Validar fechas contra el SAT (CFDI)"],
        ))
    if duplicate_findings:
        recs.append(_recommendation(
            "MEDIA", "DOCUMENTOS_DUPLICADOS",
            f"{len(duplicate_findings)} posible(s) duplicado(s) de documentos",
            ["Descartar copias del mismo documento", "Verificar folios ante el emisor"],
        ))
    if integrity and not integrity.get("is_valid", True):
        recs.append(_recommendation(
            "MEDIA", "INTEGRIDAD_DOCUMENTAL",
            "Hay datos inválidos en los documentos (RFC, fechas u origen)",
            ["Revisar la captura OCR de los documentos señalados"],
        ))
    recs.sort(key=lambda r: _PRIORITY_ORDER.get(r["prioridad"], 9))

    logger.info(f"Summary: risk={nivel} critical={critical} high={high} medium={medium} expired={expired}")

    tarjetas = certificates or {}
    return {
        "nivel_riesgo": nivel,
        "riesgo": RISK_LEVELS[nivel],
        "issues_criticos": critical,
        "issues_altos": high,
        "issues_medios": medium,
        "total_issues": critical + high + medium,
        "secuencia_facturas": {
            "completa": not sequence_gaps,
            "total_gaps": len(sequence_gaps),
            "total_retornos": len(sequence.get("retornos", [])),
        },
        "tarjetas_circulacion": {
            "total": tarjetas.get("total_tarjetas", 0),
            "vigentes": tarjetas.get("tarjetas_vigentes", 0),
            "vencidas": expired,
            "indeterminadas": tarjetas.get("tarjetas_indeterminadas", 0),
            "propietario_actual_sin_vigencia": current_expired,
        },
        "consistencia_cruzada": {
            "total_inconsistencias": len(inconsistencies),
            "criticas": (cross or {}).get("inconsistencias_criticas", 0),
        },
        "recomendaciones": recs,
    }
