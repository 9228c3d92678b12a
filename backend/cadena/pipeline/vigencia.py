"""Vigencia engine: is a circulation certificate valid on a given date?

Evaluation order for one certificate:
  1. Resolve the issuing jurisdiction (accents/case-insensitive).  Unknown
     jurisdiction or missing/unparseable expedition date → ``vigente=None``.
  2. An explicit expiration printed on the card wins (FECHA_EXPLICITA).
  3. Jurisdiction overrides, in list order; first whose condition holds.
  4. Base rule of the jurisdiction's validity model.

``evaluate`` is pure: same certificate + same ``as_of`` → same verdict.
It never raises for bad data; problems surface as ``vigente=None`` verdicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Optional

from cadena.pipeline.models import NormalizedDocument, VigenciaVerdict
from cadena.pipeline.state_rules import (
    StateRule,
    ValidityModel,
    get_state_rule,
)
from cadena.pipeline.utils import (
    to_date,
    add_days,
    add_years,
    days_between,
    years_between,
    last_day_of_month,
)
from cadena.config import TRACE_ENABLED

logger = logging.getLogger(__name__)


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


# ═══════════════════════════════════════════════════
# EVALUATION CONTEXT
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class _Context:
    rule: StateRule
    estado: str               # as printed on the card
    expedicion: date
    as_of: date
    vehicle_year: Optional[int] = None
    vehicle_class: str = ""

    @property
    def params(self):
        return self.rule.params


def _certificate_fields(cert: Any) -> dict:
    """Pull the fields the engine needs from a NormalizedDocument or a plain dict."""
    if isinstance(cert, NormalizedDocument):
        return {
            "estado": cert.estado_emisor,
            "fecha_expedicion": cert.fecha_expedicion,
            "fecha_vigencia": cert.fecha_vigencia,
            "ano": cert.vehiculo.ano,
            "clase_tipo": cert.vehiculo.clase_tipo,
        }
    if isinstance(cert, dict):
        vehiculo = cert.get("vehiculo") if isinstance(cert.get("vehiculo"), dict) else {}
        return {
            "estado": cert.get("estado_emisor") or cert.get("estado"),
            "fecha_expedicion": cert.get("fecha_expedicion"),
            "fecha_vigencia": cert.get("fecha_vigencia"),
            "ano": vehiculo.get("ano") or cert.get("ano"),
            "clase_tipo": vehiculo.get("clase_tipo") or cert.get("clase_tipo"),
        }
    return {}


def _parse_year(value: Any) -> Optional[int]:
    try:
        year = int(str(value).strip()[:4])
    except (TypeError, ValueError):
        return None
    return year if 1900 <= year <= 2100 else None


def _verdict(ctx: _Context, vigente: Optional[bool], razon: str, tipo: str,
             vencimiento: Optional[date] = None, hueco: Optional[bool] = None,
             **detalles) -> VigenciaVerdict:
    dias_vencida = None
    if vigente is False and vencimiento is not None:
        dias_vencida = max(0, days_between(vencimiento, ctx.as_of))
    detalles.setdefault("requiere_refrendo_anual", ctx.rule.requires_refrendo)
    return VigenciaVerdict(
        vigente=vigente,
        razon=razon,
        tipo_validacion=tipo,
        vencimiento=vencimiento,
        modelo=ctx.rule.model.value,
        estado_evaluado=ctx.rule.name,
        hueco_documental=ctx.rule.hueco_documental if hueco is None else hueco,
        dias_vencida=dias_vencida,
        detalles=detalles,
    )


# ═══════════════════════════════════════════════════
# 1. BASE RULES (one per validity model)
# ═══════════════════════════════════════════════════

def _annual_rule(ctx: _Context, tipo_prefix: str = "ANUAL") -> VigenciaVerdict:
    year = ctx.expedicion.year
    vencimiento = date(year, 12, 31)
    if year == ctx.as_of.year:
        return _verdict(ctx, True,
                        f"Tarjeta vigente: expedida en {year}, año de consulta {ctx.as_of.year}",
                        f"{tipo_prefix}_MISMO_AÑO", vencimiento,
                        renovacion_siguiente=date(year + 1, 1, 1).isoformat())
    return _verdict(ctx, False,
                    f"Tarjeta vencida: expedida en {year}, año de consulta {ctx.as_of.year}",
                    f"{tipo_prefix}_VENCIDA", vencimiento)


def _biennial_rule(ctx: _Context) -> VigenciaVerdict:
    p = ctx.params
    dias = days_between(ctx.expedicion, ctx.as_of)
    vigente = dias <= p.max_days
    estado = "vigente" if vigente else "vencida"
    return _verdict(ctx, vigente,
                    f"{ctx.rule.name.title()}: tarjeta {estado}, {dias} días desde expedición (vigencia 2 años)",
                    "BIENAL", add_days(ctx.expedicion, p.max_days),
                    dias_desde_expedicion=dias,
                    renovacion_aislada_disponible=p.isolated_renewal,
                    opciones_renovacion=list(p.renewal_options))


def _years_rule(ctx: _Context, years: int, tipo: str, label: str = "") -> VigenciaVerdict:
    elapsed = years_between(ctx.expedicion, ctx.as_of)
    vigente = elapsed < years
    estado = "vigente" if vigente else "vencida"
    prefix = f"{label}: " if label else ""
    return _verdict(ctx, vigente,
                    f"{prefix}Tarjeta {estado}: {elapsed:.1f} años desde expedición, vigencia {years} años",
                    tipo, add_years(ctx.expedicion, years),
                    anos_desde_expedicion=round(elapsed, 2))


def _triennial_rule(ctx: _Context) -> VigenciaVerdict:
    return _years_rule(ctx, ctx.params.years, "TRIENAL_ESTANDAR")


def _indefinite_rule(ctx: _Context) -> VigenciaVerdict:
    p = ctx.params
    suffix = ", requiere refrendo anual" if p.requires_refrendo else ""
    return _verdict(ctx, True, f"{ctx.rule.name.title()}: tarjeta indefinida{suffix}",
                    "INDEFINIDA_ESTANDAR", None)


def _temporal_change_rule(ctx: _Context) -> VigenciaVerdict:
    p = ctx.params
    label = ctx.rule.name.title()
    if p.change_date is not None:
        if ctx.expedicion < p.change_date:
            return _verdict(ctx, True,
                            f"{label}: tarjeta {p.previous_model} del sistema anterior "
                            f"(antes de {p.change_date.year}); vigente si el refrendo está al corriente",
                            "CAMBIO_TEMPORAL_SISTEMA_ANTERIOR", None,
                            sistema=p.previous_model,
                            alerta=f"Tarjeta del sistema anterior a {p.change_date.year}. Validar refrendo anual")
        verdict = _annual_rule(ctx, tipo_prefix="CAMBIO_TEMPORAL_ANUAL")
        verdict.detalles["sistema"] = f"{p.current_model.value}_DESDE_{p.change_date.year}"
        return verdict
    if p.base_years:
        verdict = _years_rule(ctx, p.base_years, "CAMBIO_TEMPORAL_BASE", label)
        verdict.detalles["modelo_base"] = "TRIENAL" if p.base_years == 3 else f"{p.base_years}_ANOS"
        return verdict
    return _verdict(ctx, None, f"{label}: modelo de cambio temporal sin parámetros",
                    "CAMBIO_TEMPORAL_INDETERMINADO")


def _event_driven_rule(ctx: _Context) -> VigenciaVerdict:
    return _verdict(ctx, True,
                    f"{ctx.rule.name.title()}: sin vigencia temporal especificada; "
                    f"renovación por eventos específicos",
                    "SIN_TEMPORAL_GENERICA", None,
                    renovacion_por_eventos=True)


_BASE_RULES: dict[ValidityModel, Callable[[_Context], VigenciaVerdict]] = {
    ValidityModel.ANUAL: _annual_rule,
    ValidityModel.BIENAL: _biennial_rule,
    ValidityModel.TRIENAL: _triennial_rule,
    ValidityModel.INDEFINIDA: _indefinite_rule,
    ValidityModel.CAMBIO_TEMPORAL: _temporal_change_rule,
    ValidityModel.SIN_TEMPORAL: _event_driven_rule,
}


# ═══════════════════════════════════════════════════
# 2. JURISDICTION OVERRIDES
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class JurisdictionOverride:
    jurisdiction: str
    condition: Callable[[_Context], bool]
    effect: Callable[[_Context], VigenciaVerdict]
    description: str = ""


def _previous_year_card(ctx: _Context) -> bool:
    return ctx.expedicion.year == ctx.as_of.year - 1


# ── Baja California: renewal deadline depends on vehicle age ──

def _bc_deadline(ctx: _Context) -> Optional[date]:
    tier = ctx.params.age_tier
    if tier is None or ctx.vehicle_year is None:
        return None
    age = ctx.as_of.year - ctx.vehicle_year
    month = tier.month if age <= tier.max_age_years else tier.month_older
    return last_day_of_month(ctx.as_of.year, month)


def _bc_condition(ctx: _Context) -> bool:
    deadline = _bc_deadline(ctx)
    return _previous_year_card(ctx) and deadline is not None and ctx.as_of <= deadline


def _bc_effect(ctx: _Context) -> VigenciaVerdict:
    deadline = _bc_deadline(ctx)
    age = ctx.as_of.year - ctx.vehicle_year
    return _verdict(ctx, True,
                    f"Baja California: vehículo de {age} años, plazo de refrendo hasta "
                    f"{deadline.month}/{deadline.year}",
                    "ANUAL_BC_ANTIGUEDAD", deadline, antiguedad_vehiculo=age)


# ── Morelos: temporary extension of the renewal window ──

def _morelos_condition(ctx: _Context) -> bool:
    until = ctx.params.extension_until
    return (until is not None and ctx.as_of.year == until.year
            and _previous_year_card(ctx) and ctx.as_of <= until)


def _morelos_effect(ctx: _Context) -> VigenciaVerdict:
    until = ctx.params.extension_until
    return _verdict(ctx, True,
                    f"Morelos: ampliación temporal del período de renovación hasta {until.isoformat()}",
                    "ANUAL_MORELOS_AMPLIACION", until, ampliacion_temporal=True)


# ── Colima: permanent card, annual fiscal sticker ──

def _colima_effect(ctx: _Context) -> VigenciaVerdict:
    return _verdict(ctx, True, "Colima: tarjeta permanente (requiere calcomanía fiscal anual)",
                    "TRIENAL_COLIMA_PERMANENTE", None, requiere_calcomania=True)


# ── Estado de México: card and plates expire separately ──

def _edomex_effect(ctx: _Context) -> VigenciaVerdict:
    p = ctx.params
    elapsed = years_between(ctx.expedicion, ctx.as_of)
    card_ok = elapsed < p.years
    plates_ok = elapsed < p.plates_years
    card_exp = add_years(ctx.expedicion, p.years)
    plates_exp = add_years(ctx.expedicion, p.plates_years)
    return _verdict(ctx, card_ok and plates_ok,
                    f"Estado de México: tarjeta {'vigente' if card_ok else 'vencida'} ({p.years} años), "
                    f"placas {'vigentes' if plates_ok else 'vencidas'} ({p.plates_years} años)",
                    "TRIENAL_EDOMEX_DUAL", card_exp,
                    sistema_dual=True,
                    vencimiento_tarjeta=card_exp.isoformat(),
                    vencimiento_placas=plates_exp.isoformat())


# ── Baja California Sur / Zacatecas: indefinite with a documentation gap ──

def _bcs_effect(ctx: _Context) -> VigenciaVerdict:
    return _verdict(ctx, True,
                    "Baja California Sur: tarjeta indefinida, sin refrendo anual desde "
                    f"{ctx.params.refrendo_dropped_on.year} (solo revista vehicular)",
                    "INDEFINIDA_BCS_SIN_REFRENDO", None, hueco=True,
                    requiere_revista_vehicular=True)


def _zacatecas_effect(ctx: _Context) -> VigenciaVerdict:
    return _verdict(ctx, True,
                    "Zacatecas: registro permanente (hueco documental: vigencia temporal no especificada)",
                    "INDEFINIDA_ZAC_HUECO", None, hueco=True,
                    alerta="Estado sin reglas claras de vigencia temporal")


# ── Nuevo León: card text changed over time (display only) ──

def _nl_effect(ctx: _Context) -> VigenciaVerdict:
    p = ctx.params
    texto = next((rev.texto for rev in p.text_revisions if rev.covers(ctx.expedicion)), None)
    plazo = f"{p.deadline.day} de marzo de {ctx.as_of.year}" if p.deadline else None
    return _verdict(ctx, True,
                    f"Nuevo León: tarjeta indefinida (texto: \"{texto or 'N/A'}\"). "
                    f"Requiere refrendo anual antes del 31-marzo",
                    "INDEFINIDA_NL_COMPLEMENTARIA", None,
                    texto_tarjeta=texto, plazo_refrendo=plazo,
                    tarjeta_complementaria_digital=True,
                    url_descarga=p.download_url)


# ── Yucatán: extension decrees over a triennial base ──

def _active_decree(ctx: _Context):
    base_expiry = add_years(ctx.expedicion, ctx.params.base_years or 3)
    for decree in sorted(ctx.params.decrees, key=lambda d: d.extends_until):
        if ctx.as_of <= decree.extends_until and base_expiry < decree.extends_until:
            return decree
    return None


def _yucatan_decree_effect(ctx: _Context) -> VigenciaVerdict:
    decree = _active_decree(ctx)
    replating = ctx.params.scheduled_replating
    return _verdict(ctx, True,
                    f"Yucatán: vigencia extendida por decreto {decree.numero} hasta "
                    f"{decree.extends_until.isoformat()}. {decree.descripcion}",
                    "CAMBIO_TEMPORAL_YUCATAN_PRORROGA", decree.extends_until,
                    decreto_aplicable={
                        "numero": decree.numero,
                        "fecha": decree.issued.isoformat(),
                        "extiende_vigencia_hasta": decree.extends_until.isoformat(),
                        "descripcion": decree.descripcion,
                    },
                    reemplacamiento_programado=replating.isoformat() if replating else None)


# ── Puebla: mass reissuance invalidated every earlier card ──

def _puebla_condition(ctx: _Context) -> bool:
    window = ctx.params.mass_reissuance
    return window is not None and ctx.expedicion < window.start


def _puebla_effect(ctx: _Context) -> VigenciaVerdict:
    window = ctx.params.mass_reissuance
    vigente = ctx.as_of <= window.end
    razon = (
        f"Puebla: tarjeta anterior a la renovación masiva {window.start.year}; "
        f"válida solo hasta el cierre del programa ({window.end.isoformat()})"
        if vigente else
        f"Puebla: tarjeta invalidada por la renovación masiva obligatoria {window.start.year} "
        f"({window.descripcion})"
    )
    return _verdict(ctx, vigente, razon, "SIN_TEMPORAL_PUEBLA_RENOVACION_MASIVA", window.end,
                    renovacion_masiva={
                        "fecha_inicio": window.start.isoformat(),
                        "fecha_fin": window.end.isoformat(),
                        "descripcion": window.descripcion,
                    })


# ── Jalisco: 4-year plastic card for automobiles only ──

def _jalisco_effect(ctx: _Context) -> VigenciaVerdict:
    p = ctx.params
    clase = ctx.vehicle_class.upper()
    if "MOTO" in clase:
        return _verdict(ctx, None,
                        "Jalisco: MOTOCICLETA con hueco documental, sistema posterior a 2021 no "
                        "clarificado para motos",
                        "SIN_TEMPORAL_JALISCO_MOTO_HUECO", None, hueco=True,
                        tipo_vehiculo="MOTOCICLETA")
    if "AUTO" in clase:
        if p.auto_validity_since and ctx.expedicion >= p.auto_validity_since:
            verdict = _years_rule(ctx, p.auto_validity_years, "SIN_TEMPORAL_JALISCO_AUTO_2021",
                                  "Jalisco: AUTOMÓVIL con tarjeta plastificada")
            verdict.detalles["tipo_vehiculo"] = "AUTOMOVIL"
            return verdict
        return _verdict(ctx, None,
                        f"Jalisco: AUTOMÓVIL con tarjeta anterior a {p.auto_validity_since.year}; "
                        f"vigencia no documentada",
                        "SIN_TEMPORAL_JALISCO_AUTO_PREVIA", None, hueco=True,
                        tipo_vehiculo="AUTOMOVIL")
    return _verdict(ctx, None, "Jalisco: tipo de vehículo no determinado, no se puede validar vigencia",
                    "SIN_TEMPORAL_JALISCO_INDETERMINADO", None)


def _always(ctx: _Context) -> bool:
    return True


_OVERRIDES: list[JurisdictionOverride] = [
    JurisdictionOverride("BAJA CALIFORNIA", _bc_condition, _bc_effect,
                         "Plazo de refrendo según antigüedad del vehículo"),
    JurisdictionOverride("MORELOS", _morelos_condition, _morelos_effect,
                         "Ampliación temporal del período de renovación"),
    JurisdictionOverride("COLIMA", _always, _colima_effect,
                         "Tarjeta permanente con calcomanía anual"),
    JurisdictionOverride("ESTADO DE MEXICO", _always, _edomex_effect,
                         "Vigencia dual tarjeta/placas"),
    JurisdictionOverride("BAJA CALIFORNIA SUR", _always, _bcs_effect,
                         "Refrendo eliminado en 2015"),
    JurisdictionOverride("ZACATECAS", _always, _zacatecas_effect,
                         "Registro permanente sin vigencia definida"),
    JurisdictionOverride("NUEVO LEON", _always, _nl_effect,
                         "Texto de tarjeta según fecha de expedición"),
    JurisdictionOverride("YUCATAN", lambda ctx: _active_decree(ctx) is not None, _yucatan_decree_effect,
                         "Decretos de prórroga"),
    JurisdictionOverride("PUEBLA", _puebla_condition, _puebla_effect,
                         "Renovación masiva obligatoria 2018"),
    JurisdictionOverride("JALISCO", _always, _jalisco_effect,
                         "Tarjeta de 4 años solo para automóviles"),
]


# ═══════════════════════════════════════════════════
# 3. ENTRY POINTS
# ═══════════════════════════════════════════════════

def _insufficient(razon: str, estado: Optional[str] = None) -> VigenciaVerdict:
    return VigenciaVerdict(vigente=None, razon=razon, tipo_validacion="DATOS_INSUFICIENTES",
                           estado_evaluado=estado)


def evaluate(certificate: Any, as_of: Any = None) -> VigenciaVerdict:
    """Evaluate a circulation certificate's validity on *as_of* (default: today).

    Args:
        certificate: a :class:`NormalizedDocument` of kind
            ``vehicle_certificate`` or a dict with the same field names.
        as_of: date / datetime / ISO string.

    Returns:
        A :class:`VigenciaVerdict`; ``vigente`` is None when the engine
        cannot decide (unknown state, missing dates, documented gaps).
    """
    as_of_date = to_date(as_of) if as_of is not None else date.today()
    if as_of_date is None:
        return _insufficient(f"Fecha de consulta inválida: {as_of!r}")

    fields = _certificate_fields(certificate)
    estado = fields.get("estado")
    expedicion = to_date(fields.get("fecha_expedicion"))
    if not estado or not expedicion:
        return _insufficient("Datos insuficientes para validar vigencia", estado)

    rule = get_state_rule(estado)
    if rule is None:
        return VigenciaVerdict(vigente=None,
                               razon=f"Estado \"{estado}\" no encontrado en tabla de reglas",
                               tipo_validacion="ESTADO_DESCONOCIDO", estado_evaluado=estado)

    ctx = _Context(
        rule=rule,
        estado=estado,
        expedicion=expedicion,
        as_of=as_of_date,
        vehicle_year=_parse_year(fields.get("ano")),
        vehicle_class=str(fields.get("clase_tipo") or ""),
    )

    explicit = to_date(fields.get("fecha_vigencia"))
    if explicit is not None:
        vigente = as_of_date <= explicit
        _trace(f"VIGENCIA {rule.name} explicit={explicit} as_of={as_of_date} → {vigente}")
        return _verdict(ctx, vigente,
                        f"Vigencia impresa en la tarjeta hasta {explicit.isoformat()}",
                        "FECHA_EXPLICITA", explicit)

    try:
        for override in _OVERRIDES:
            if override.jurisdiction == rule.name and override.condition(ctx):
                verdict = override.effect(ctx)
                _trace(f"VIGENCIA {rule.name} override={verdict.tipo_validacion} → {verdict.vigente}")
                return verdict
        verdict = _BASE_RULES[rule.model](ctx)
    except (ValueError, OverflowError) as e:
        # Expedition dates near date.max push expiry arithmetic out of range.
        logger.warning(f"Vigencia {rule.name}: expedición {expedicion} fuera de rango ({e})")
        return _insufficient(f"Fecha de expedición fuera de rango: {expedicion.isoformat()}", estado)
    _trace(f"VIGENCIA {rule.name} base={verdict.tipo_validacion} exp={expedicion} "
           f"as_of={as_of_date} → {verdict.vigente}")
    return verdict


def compute_expiration(certificate: Any, as_of: Any = None) -> Optional[date]:
    """Effective expiration date (None = indefinite or undeterminable)."""
    return evaluate(certificate, as_of).vencimiento
