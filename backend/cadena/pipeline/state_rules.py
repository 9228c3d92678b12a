"""Circulation-certificate validity rules for the 32 Mexican jurisdictions.

Each jurisdiction maps to one of six validity models.  The model is a tag
(:class:`ValidityModel`) and the parameters are a typed, frozen record whose
class is fixed by the model, so a TRIENAL entry can never carry annual
renewal fields by accident.  Jurisdiction-specific behaviour that the base
model cannot express lives in ``vigencia._OVERRIDES``, not here.

Sources: state fiscal codes, Periódico Oficial decrees and transit
regulations published 2015-2025.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional, Union

from cadena.pipeline.utils import normalize_state_name

logger = logging.getLogger(__name__)


class ValidityModel(str, Enum):
    ANUAL = "ANUAL"
    BIENAL = "BIENAL"
    TRIENAL = "TRIENAL"
    INDEFINIDA = "INDEFINIDA"
    CAMBIO_TEMPORAL = "CAMBIO_TEMPORAL"
    SIN_TEMPORAL = "SIN_TEMPORAL"


# ═══════════════════════════════════════════════════
# PARAMETER RECORDS (one class per model)
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class RenewalDeadline:
    month: int
    day: int

    def to_dict(self) -> dict:
        return {"mes": self.month, "dia": self.day}


@dataclass(frozen=True)
class AgeTier:
    """Renewal deadline month depends on vehicle age."""
    max_age_years: int      # vehicles this old or newer use `month`
    month: int
    month_older: int


@dataclass(frozen=True)
class AnnualParams:
    deadline: RenewalDeadline
    age_tier: Optional[AgeTier] = None
    extension_until: Optional[date] = None   # temporary renewal-window extension


@dataclass(frozen=True)
class ScheduledExchange:
    year: int
    cancels_year: int
    agreement: str


@dataclass(frozen=True)
class TriennialParams:
    years: Optional[int] = 3                 # None → permanent card
    plates_years: Optional[int] = None       # dual card/plates validity
    annual_sticker: bool = False
    scheduled_exchanges: tuple[ScheduledExchange, ...] = ()
    renewal_cycles: tuple[int, ...] = ()


@dataclass(frozen=True)
class TextRevision:
    desde: date
    hasta: Optional[date]
    texto: str

    def covers(self, d: date) -> bool:
        return self.desde <= d and (self.hasta is None or d <= self.hasta)


@dataclass(frozen=True)
class IndefiniteParams:
    requires_refrendo: bool = True
    deadline: Optional[RenewalDeadline] = None
    refrendo_dropped_on: Optional[date] = None
    text_revisions: tuple[TextRevision, ...] = ()
    download_url: Optional[str] = None


@dataclass(frozen=True)
class BiennialParams:
    max_days: int = 730
    isolated_renewal: bool = False
    renewal_options: tuple[str, ...] = ()


@dataclass(frozen=True)
class Decree:
    numero: str
    issued: date
    extends_until: date
    descripcion: str


@dataclass(frozen=True)
class TemporalChangeParams:
    change_date: Optional[date] = None
    previous_model: Optional[str] = None            # e.g. "PERMANENTE"
    current_model: Optional[ValidityModel] = None
    base_years: Optional[int] = None                # fallback when no change date
    decrees: tuple[Decree, ...] = ()
    scheduled_replating: Optional[date] = None


@dataclass(frozen=True)
class MassReissuance:
    start: date
    end: date
    descripcion: str


@dataclass(frozen=True)
class EventDrivenParams:
    requires_refrendo: bool = False
    mass_reissuance: Optional[MassReissuance] = None
    auto_validity_years: Optional[int] = None
    auto_validity_since: Optional[date] = None
    renewal_events: tuple[str, ...] = ()


ModelParams = Union[
    AnnualParams, BiennialParams, TriennialParams,
    IndefiniteParams, TemporalChangeParams, EventDrivenParams,
]

_PARAMS_BY_MODEL = {
    ValidityModel.ANUAL: AnnualParams,
    ValidityModel.BIENAL: BiennialParams,
    ValidityModel.TRIENAL: TriennialParams,
    ValidityModel.INDEFINIDA: IndefiniteParams,
    ValidityModel.CAMBIO_TEMPORAL: TemporalChangeParams,
    ValidityModel.SIN_TEMPORAL: EventDrivenParams,
}


@dataclass(frozen=True)
class StateRule:
    name: str
    model: ValidityModel
    params: ModelParams
    hueco_documental: bool = False
    digital_since: Optional[date] = None
    notas: str = ""

    def __post_init__(self):
        expected = _PARAMS_BY_MODEL[self.model]
        if not isinstance(self.params, expected):
            raise TypeError(
                f"{self.name}: model {self.model.value} requires {expected.__name__}, "
                f"got {type(self.params).__name__}"
            )

    @property
    def requires_refrendo(self) -> bool:
        if self.model == ValidityModel.ANUAL:
            return True
        if isinstance(self.params, (IndefiniteParams, EventDrivenParams)):
            return self.params.requires_refrendo
        if self.model == ValidityModel.CAMBIO_TEMPORAL:
            return True
        return False

    def to_dict(self) -> dict:
        return {
            "estado": self.name,
            "modelo_vigencia": self.model.value,
            "requiere_refrendo_anual": self.requires_refrendo,
            "hueco_documental": self.hueco_documental,
            "implementa_digital": self.digital_since is not None,
            "fecha_implementacion_digital": self.digital_since.isoformat() if self.digital_since else None,
            "notas": self.notas,
        }


# ═══════════════════════════════════════════════════
# RULES TABLE
# ═══════════════════════════════════════════════════

_MARCH_31 = RenewalDeadline(3, 31)
_DEC_31 = RenewalDeadline(12, 31)


def _annual(name, deadline, **kw) -> StateRule:
    age_tier = kw.pop("age_tier", None)
    extension_until = kw.pop("extension_until", None)
    return StateRule(name, ValidityModel.ANUAL,
                     AnnualParams(deadline, age_tier=age_tier, extension_until=extension_until), **kw)


def _triennial(name, **kw) -> StateRule:
    params = TriennialParams(**kw.pop("params", {}))
    return StateRule(name, ValidityModel.TRIENAL, params, **kw)


def _indefinite(name, **kw) -> StateRule:
    params = IndefiniteParams(**kw.pop("params", {}))
    return StateRule(name, ValidityModel.INDEFINIDA, params, **kw)


def _event_driven(name, **kw) -> StateRule:
    params = EventDrivenParams(**kw.pop("params", {}))
    return StateRule(name, ValidityModel.SIN_TEMPORAL, params, hueco_documental=kw.pop("hueco_documental", True), **kw)


_RULES: list[StateRule] = [
    # ── ANUAL (10) ──
    _annual("BAJA CALIFORNIA", _MARCH_31,
            age_tier=AgeTier(max_age_years=9, month=3, month_older=6),
            notas="Plazos diferenciados por antigüedad del vehículo"),
    _annual("SONORA", _MARCH_31, notas="Recargos trimestrales: 14%, 28%, 42%"),
    _annual("SINALOA", _MARCH_31),
    _annual("CHIHUAHUA", _MARCH_31),
    _annual("OAXACA", _DEC_31),
    _annual("MORELOS", RenewalDeadline(5, 31), extension_until=date(2025, 5, 31),
            notas="Período de renovación ampliado a enero-mayo en 2025"),
    _annual("CAMPECHE", _DEC_31),
    _annual("QUINTANA ROO", _DEC_31),
    _annual("TABASCO", RenewalDeadline(4, 30)),
    _annual("AGUASCALIENTES", _MARCH_31, digital_since=date(2025, 1, 1),
            notas="Tarjeta digital obligatoria desde enero 2025, sin entrega física"),

    # ── TRIENAL (6) ──
    _triennial("HIDALGO", params={"scheduled_exchanges": (
        ScheduledExchange(2018, 2013, "Acuerdo_2017"),
        ScheduledExchange(2023, 2018, "Acuerdo_17_nov_2022"),
    )}, notas="Canjes masivos programados, publicados en Periódico Oficial un año antes"),
    _triennial("ESTADO DE MEXICO", params={"plates_years": 5}, digital_since=date(2024, 9, 1),
               notas="Sistema dual: tarjeta 3 años, placas 5 años. Código QR para validación"),
    _triennial("SAN LUIS POTOSI", params={"renewal_cycles": (2022, 2025, 2028, 2031)},
               notas="Cambio de PVC a papel de seguridad en enero 2025"),
    _triennial("COLIMA", params={"years": None, "annual_sticker": True},
               notas="Tarjeta permanente con calcomanía fiscal anual"),
    _triennial("GUERRERO"),
    _triennial("COAHUILA", notas="Canje de placas cada 3 años con tarjeta incluida"),

    # ── INDEFINIDA (8) ──
    _indefinite("NUEVO LEON", params={
        "deadline": _MARCH_31,
        "download_url": "icvnl.gob.mx",
        "text_revisions": (
            TextRevision(date(2016, 1, 1), date(2020, 3, 31), "VIGENCIA INDEFINIDA"),
            TextRevision(date(2020, 4, 1), None, "VIGENCIA CONDICIONADA AL PAGO DEL REFRENDO ANUAL"),
        ),
    }, digital_since=date(2016, 1, 1),
        notas="Tarjeta Complementaria Digital acredita el pago de refrendo"),
    _indefinite("GUANAJUATO", notas="Tarjeta indefinida mientras esté registrada en padrón"),
    _indefinite("ZACATECAS", params={"requires_refrendo": False}, hueco_documental=True,
                notas="Registro permanente sin renovación periódica definida en legislación"),
    _indefinite("DURANGO", notas="Reemplacamiento cada 6 años desde la reforma 2022"),
    _indefinite("VERACRUZ", notas="Seguro de responsabilidad civil obligatorio desde 2019"),
    _indefinite("TLAXCALA"),
    _indefinite("BAJA CALIFORNIA SUR", params={
        "requires_refrendo": False,
        "refrendo_dropped_on": date(2015, 1, 1),
    }, hueco_documental=True,
        notas="Eliminó el refrendo en 2015; solo revista vehicular anual"),
    _indefinite("CIUDAD DE MEXICO", digital_since=date(2019, 4, 24),
                notas="Tarjeta digital desde abril 2019 con validez equivalente a la física"),

    # ── BIENAL (1) ──
    StateRule("QUERETARO", ValidityModel.BIENAL, BiennialParams(
        max_days=730,
        isolated_renewal=False,
        renewal_options=("Cambio_propietario", "Alta_placas", "Reemplacamiento"),
    ), notas="Vigencia 2 años desde expedición, sin renovación aislada de tarjeta"),

    # ── CAMBIO_TEMPORAL (2) ──
    StateRule("CHIAPAS", ValidityModel.CAMBIO_TEMPORAL, TemporalChangeParams(
        change_date=date(2018, 1, 1),
        previous_model="PERMANENTE",
        current_model=ValidityModel.ANUAL,
    ), notas="Tarjetas permanentes hasta 2017, anuales desde 2018"),
    StateRule("YUCATAN", ValidityModel.CAMBIO_TEMPORAL, TemporalChangeParams(
        base_years=3,
        decrees=(
            Decree("338/2020", date(2020, 12, 31), date(2021, 12, 31),
                   "Suspende reemplacamiento 2020 hasta enero 2022"),
            Decree("597/2022", date(2022, 8, 1), date(2022, 8, 30),
                   "Autoriza refrendo de tarjetas emitidas en 2020"),
            Decree("598/2022", date(2022, 8, 1), date(2022, 9, 30),
                   "Segunda prórroga de reemplacamiento"),
            Decree("718/2023", date(2023, 12, 1), date(2023, 12, 31),
                   "Refrendo digital sin costo para tarjetas que vencen el 31-dic-2023"),
            Decree("44/2024", date(2024, 1, 1), date(2025, 5, 31),
                   "Ampliación de vigencia de todas las tarjetas hasta 31-mayo-2025"),
        ),
        scheduled_replating=date(2025, 6, 1),
    ), digital_since=date(2020, 1, 1),
        notas="Cinco decretos de prórroga 2020-2024; reemplacamiento programado junio 2025"),

    # ── SIN_TEMPORAL (5) ──
    _event_driven("PUEBLA", params={
        "mass_reissuance": MassReissuance(date(2018, 2, 6), date(2018, 6, 29),
                                          "Cambio obligatorio de papel enmicado a PVC"),
        "renewal_events": ("Cambio de propietario", "Cambio de características",
                           "Pérdida o robo", "Deterioro"),
    }, notas="Tarjetas previas a la renovación masiva 2018 quedaron sin validez"),
    _event_driven("JALISCO", params={
        "auto_validity_years": 4,
        "auto_validity_since": date(2021, 1, 1),
    }, notas="Tarjeta plastificada de 4 años solo para automóviles; motocicletas sin regla clara"),
    _event_driven("NAYARIT", notas="Vigencia temporal no especificada"),
    _event_driven("MICHOACAN", notas="Última reforma del reglamento en 2007"),
    _event_driven("TAMAULIPAS", params={"requires_refrendo": True}, hueco_documental=False,
                  notas="Seguro de responsabilidad civil obligatorio desde 2016"),
]

STATE_RULES: dict[str, StateRule] = {r.name: r for r in _RULES}

_ALIASES = {
    "MEXICO": "ESTADO DE MEXICO",
    "EDOMEX": "ESTADO DE MEXICO",
    "EDO MEX": "ESTADO DE MEXICO",
    "EDO DE MEXICO": "ESTADO DE MEXICO",
    "CDMX": "CIUDAD DE MEXICO",
    "DISTRITO FEDERAL": "CIUDAD DE MEXICO",
    "COAHUILA DE ZARAGOZA": "COAHUILA",
    "MICHOACAN DE OCAMPO": "MICHOACAN",
    "VERACRUZ DE IGNACIO DE LA LLAVE": "VERACRUZ",
}


def resolve_state_name(name) -> Optional[str]:
    """Canonical table key for a jurisdiction name, or None if unknown."""
    key = normalize_state_name(name)
    if not key:
        return None
    key = _ALIASES.get(key, key)
    return key if key in STATE_RULES else None


def get_state_rule(name) -> Optional[StateRule]:
    key = resolve_state_name(name)
    return STATE_RULES[key] if key else None


def states_by_model() -> dict[str, list[str]]:
    """Jurisdictions grouped by validity model (for reporting)."""
    out: dict[str, list[str]] = {m.value: [] for m in ValidityModel}
    for rule in _RULES:
        out[rule.model.value].append(rule.name)
    return out
