"""
Credit Scoring Engine

Deterministic five-component score (0-1000) computed from raw bureau data:

    Component          Max   Basis
    payment_history    350   days late, late payment count, overdue/collections
    debt_level         300   utilization, overdue ratio, absolute balance
    credit_age         150   months of credit history (awarded, not penalized)
    credit_mix         100   distinct credit types plus closed-account bonus
    recent_behavior    100   severely late pending payments, restructurings

Everything here is pure: no I/O, no database access. Persisting a result is
a separate explicit call (see database/scoring_service.py).

Factor and recommendation texts are in Spanish, as shown to end users.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

PAYMENT_HISTORY_MAX = 350
DEBT_LEVEL_MAX = 300
CREDIT_AGE_MAX = 150
CREDIT_MIX_MAX = 100
RECENT_BEHAVIOR_MAX = 100

SCORE_MIN = 0
SCORE_MAX = 1000

NO_HISTORY_TIER = "SIN_HISTORIAL"

# Pending payments later than this count as severely late
SEVERE_DELAY_DAYS = 30


# ============================================
# RESULT TYPES
# ============================================

class RecommendationPriority(str, Enum):
    HIGH = "ALTA"
    MEDIUM = "MEDIA"
    LOW = "BAJA"


@dataclass
class ComponentScore:
    """Points awarded by one scoring component with the factors that drove them"""
    name: str
    points: int
    max_points: int
    positive_factors: List[str] = field(default_factory=list)
    negative_factors: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def percentage(self) -> float:
        return round(self.points / self.max_points * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'name': self.name,
            'points': self.points,
            'max_points': self.max_points,
            'percentage': self.percentage,
            'positive_factors': list(self.positive_factors),
            'negative_factors': list(self.negative_factors),
        }
        if self.details:
            data['details'] = dict(self.details)
        return data


@dataclass(frozen=True)
class RiskTier:
    label: str
    description: str
    min_score: int
    max_score: int

    @property
    def range(self) -> str:
        return f"{self.min_score}-{self.max_score}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label': self.label,
            'description': self.description,
            'range': self.range,
        }


@dataclass(frozen=True)
class Recommendation:
    priority: RecommendationPriority
    category: str
    title: str
    description: str
    impact: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'priority': self.priority.value,
            'category': self.category,
            'title': self.title,
            'description': self.description,
            'impact': self.impact,
        }


@dataclass
class ScoreResult:
    """Full scoring output

    Attributes:
        score_total: Sum of component points, 0-1000
        risk_tier: Tier matching score_total (or SIN_HISTORIAL)
        components: Component results keyed by component name
        positive_factors: Consolidated positives in component order
        negative_factors: Consolidated negatives in component order
        recommendations: Fired recommendation rules in rule order
        no_history: True when the bureau had no record of the subject
    """
    score_total: int
    risk_tier: RiskTier
    components: Dict[str, ComponentScore]
    positive_factors: List[str]
    negative_factors: List[str]
    recommendations: List[Recommendation]
    computed_at: datetime
    no_history: bool = False
    base_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score_total': self.score_total,
            'risk_tier': self.risk_tier.to_dict(),
            'no_history': self.no_history,
            'components': {name: comp.to_dict() for name, comp in self.components.items()},
            'positive_factors': list(self.positive_factors),
            'negative_factors': list(self.negative_factors),
            'recommendations': [rec.to_dict() for rec in self.recommendations],
            'computed_at': self.computed_at.isoformat(),
            'base_data': dict(self.base_data),
        }


# Evaluated in order; the first inclusive range containing the score wins
RISK_TIERS = (
    RiskTier("EXCELENTE", "Riesgo crediticio mínimo - Excelente perfil", 800, 1000),
    RiskTier("MUY_BUENO", "Riesgo crediticio bajo - Muy buen perfil", 700, 799),
    RiskTier("BUENO", "Riesgo crediticio moderado bajo - Buen perfil", 600, 699),
    RiskTier("REGULAR", "Riesgo crediticio moderado - Perfil promedio", 500, 599),
    RiskTier("MALO", "Riesgo crediticio alto - Perfil con problemas", 400, 499),
    RiskTier("MUY_MALO", "Riesgo crediticio muy alto - Perfil crítico", 0, 399),
)

FALLBACK_TIER = RISK_TIERS[-1]

NO_HISTORY_RISK_TIER = RiskTier(
    NO_HISTORY_TIER,
    "Sin información crediticia suficiente para calcular un score",
    0,
    0,
)

NO_DATA_FACTOR = "Sin información en buró de crédito"


# ============================================
# HELPERS
# ============================================

def _number(value: Any, default: float = 0.0) -> float:
    """Coerce bureau numerics (often serialized decimals) to float"""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.debug("Non-numeric bureau value %r treated as %s", value, default)
        return default


def _count(value: Any) -> int:
    return int(_number(value))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# COMPONENTS
# ============================================

def score_payment_history(summary: Mapping[str, Any]) -> ComponentScore:
    """Penalize days late, number of late payments, overdue and collections accounts"""
    points = PAYMENT_HISTORY_MAX
    positives: List[str] = []
    negatives: List[str] = []

    max_days = _count(summary.get('max_dias_atraso'))
    if max_days <= 0:
        positives.append("Sin atrasos registrados")
    elif max_days <= 30:
        points -= 50
        negatives.append(f"Atraso máximo de {max_days} días")
    elif max_days <= 60:
        points -= 100
        negatives.append(f"Atraso significativo de {max_days} días")
    elif max_days <= 90:
        points -= 150
        negatives.append(f"Atraso grave de {max_days} días")
    else:
        points -= 250
        negatives.append(f"Atraso crítico de {max_days} días")

    late_payments = _count(summary.get('total_pagos_atrasados'))
    if late_payments <= 0:
        positives.append("Todos los pagos al día")
    elif late_payments <= 2:
        points -= 30
        negatives.append(f"{late_payments} pagos atrasados")
    elif late_payments <= 5:
        points -= 60
        negatives.append(f"{late_payments} pagos atrasados")
    else:
        points -= 100
        negatives.append(f"{late_payments} pagos atrasados (alto)")

    overdue = _count(summary.get('obligaciones_vencidas'))
    if overdue > 0:
        points -= overdue * 40
        negatives.append(f"{overdue} obligación(es) vencida(s)")

    collections = _count(summary.get('obligaciones_cartera_vencida'))
    if collections > 0:
        points -= collections * 50
        negatives.append(f"{collections} en cartera vencida")

    return ComponentScore(
        name="payment_history",
        points=max(0, points),
        max_points=PAYMENT_HISTORY_MAX,
        positive_factors=positives,
        negative_factors=negatives,
    )


def score_debt_level(
    summary: Mapping[str, Any],
    obligations: Sequence[Mapping[str, Any]]
) -> ComponentScore:
    """Penalize high utilization, overdue amounts and very large balances"""
    points = DEBT_LEVEL_MAX
    positives: List[str] = []
    negatives: List[str] = []
    details: Dict[str, Any] = {}

    with_limit = [o for o in obligations if _number(o.get('limite_credito')) > 0]
    if with_limit:
        utilization = sum(
            _number(o.get('saldo_actual')) / _number(o.get('limite_credito'))
            for o in with_limit
        ) / len(with_limit)
        details['average_utilization'] = round(utilization, 4)

        if utilization <= 0.30:
            positives.append("Utilización de crédito baja (≤30%)")
        elif utilization <= 0.50:
            points -= 50
            negatives.append("Utilización de crédito moderada (30-50%)")
        elif utilization <= 0.75:
            points -= 100
            negatives.append("Utilización de crédito alta (50-75%)")
        else:
            points -= 150
            negatives.append("Utilización de crédito muy alta (>75%)")

    balance = _number(summary.get('saldo_total_actual'))
    overdue_amount = _number(summary.get('monto_total_vencido'))

    if overdue_amount <= 0:
        overdue_ratio = 0.0
    elif balance <= 0:
        # Overdue amount with no reported balance: worst tier
        overdue_ratio = 1.0
    else:
        overdue_ratio = overdue_amount / balance
    details['overdue_ratio'] = round(overdue_ratio, 4)

    if overdue_ratio == 0:
        positives.append("Sin montos vencidos")
    elif overdue_ratio <= 0.05:
        points -= 30
        negatives.append("Monto vencido bajo (≤5% del saldo)")
    elif overdue_ratio <= 0.15:
        points -= 70
        negatives.append("Monto vencido moderado (5-15% del saldo)")
    else:
        points -= 120
        negatives.append("Monto vencido alto (>15% del saldo)")

    if balance > 1_000_000:
        points -= 30
        negatives.append("Nivel de deuda alto (>$1,000,000)")
    elif balance > 500_000:
        positives.append("Nivel de deuda moderado")
    elif balance > 0:
        positives.append("Nivel de deuda bajo")

    return ComponentScore(
        name="debt_level",
        points=max(0, points),
        max_points=DEBT_LEVEL_MAX,
        positive_factors=positives,
        negative_factors=negatives,
        details=details,
    )


def score_credit_age(summary: Mapping[str, Any]) -> ComponentScore:
    """Award points by months of credit history"""
    months = _count(summary.get('meses_historial_crediticio'))
    positives: List[str] = []
    negatives: List[str] = []

    if months >= 60:
        points = 150
        positives.append("Historial crediticio extenso (>5 años)")
    elif months >= 36:
        points = 120
        positives.append("Historial crediticio sólido (3-5 años)")
    elif months >= 24:
        points = 90
        positives.append("Historial crediticio moderado (2-3 años)")
    elif months >= 12:
        points = 60
        negatives.append("Historial crediticio limitado (1-2 años)")
    elif months > 0:
        points = 30
        negatives.append("Historial crediticio muy reciente (<1 año)")
    else:
        points = 0
        negatives.append("Sin historial crediticio")

    return ComponentScore(
        name="credit_age",
        points=points,
        max_points=CREDIT_AGE_MAX,
        positive_factors=positives,
        negative_factors=negatives,
        details={'months': months},
    )


def score_credit_mix(
    summary: Mapping[str, Any],
    obligations: Sequence[Mapping[str, Any]]
) -> ComponentScore:
    """Award points by credit type diversity, plus a closed-account bonus"""
    positives: List[str] = []
    negatives: List[str] = []

    credit_types = sorted({
        str(o.get('tipo_credito')) for o in obligations if o.get('tipo_credito')
    })
    type_count = len(credit_types)

    if type_count >= 4:
        points = 100
        positives.append("Excelente diversificación de créditos")
    elif type_count == 3:
        points = 75
        positives.append("Buena diversificación de créditos")
    elif type_count == 2:
        points = 50
        positives.append("Diversificación moderada de créditos")
    elif type_count == 1:
        points = 25
        negatives.append("Poca diversificación de créditos")
    else:
        points = 0
        negatives.append("Sin diversificación de créditos")

    closed = _count(summary.get('obligaciones_cerradas'))
    if closed > 0:
        bonus = min(25, closed * 5)
        points = min(CREDIT_MIX_MAX, points + bonus)
        positives.append(f"{closed} crédito(s) cerrado(s) exitosamente")

    return ComponentScore(
        name="credit_mix",
        points=points,
        max_points=CREDIT_MIX_MAX,
        positive_factors=positives,
        negative_factors=negatives,
        details={'credit_types': credit_types},
    )


def score_recent_behavior(
    summary: Mapping[str, Any],
    pending_payments: Sequence[Mapping[str, Any]]
) -> ComponentScore:
    """Penalize severely late pending payments and restructured obligations"""
    points = RECENT_BEHAVIOR_MAX
    positives: List[str] = []
    negatives: List[str] = []

    severely_late = [
        p for p in pending_payments
        if _number(p.get('dias_atraso_calculado')) > SEVERE_DELAY_DAYS
    ]
    if not severely_late:
        positives.append("Sin pagos pendientes atrasados")
    elif len(severely_late) <= 2:
        points -= 30
        negatives.append(f"{len(severely_late)} pago(s) muy atrasado(s)")
    else:
        points -= 60
        negatives.append(f"{len(severely_late)} pagos muy atrasados (crítico)")

    restructured = _count(summary.get('obligaciones_reestructuradas'))
    if restructured > 0:
        points -= restructured * 20
        negatives.append(f"{restructured} obligación(es) reestructurada(s)")

    total = _count(summary.get('total_obligaciones')) or 1
    if _count(summary.get('obligaciones_vigentes')) / total >= 0.8:
        positives.append("Mayoría de obligaciones vigentes y saludables")

    return ComponentScore(
        name="recent_behavior",
        points=max(0, points),
        max_points=RECENT_BEHAVIOR_MAX,
        positive_factors=positives,
        negative_factors=negatives,
        details={'severely_late_payments': len(severely_late)},
    )


# ============================================
# TIERS AND RECOMMENDATIONS
# ============================================

def determine_risk_tier(score_total: int) -> RiskTier:
    for tier in RISK_TIERS:
        if tier.min_score <= score_total <= tier.max_score:
            return tier
    return FALLBACK_TIER


def generate_recommendations(
    components: Mapping[str, ComponentScore],
    score_total: int
) -> List[Recommendation]:
    """Apply the fixed recommendation rules in order; several may fire"""
    recommendations: List[Recommendation] = []

    if components['payment_history'].points < 250:
        recommendations.append(Recommendation(
            RecommendationPriority.HIGH,
            "HISTORIAL_PAGOS",
            "Mejorar historial de pagos",
            "Realice todos los pagos a tiempo para recuperar su score",
            "+100 puntos",
        ))

    if components['debt_level'].points < 200:
        recommendations.append(Recommendation(
            RecommendationPriority.HIGH,
            "ENDEUDAMIENTO",
            "Reducir nivel de endeudamiento",
            "Reduzca el saldo de sus tarjetas por debajo del 30% del límite",
            "+80 puntos",
        ))

    if components['credit_age'].points < 60:
        recommendations.append(Recommendation(
            RecommendationPriority.MEDIUM,
            "ANTIGUEDAD",
            "Construir historial crediticio",
            "Mantenga cuentas antiguas abiertas para aumentar su antigüedad",
            "+30 puntos",
        ))

    if components['recent_behavior'].points < 70:
        recommendations.append(Recommendation(
            RecommendationPriority.HIGH,
            "COMPORTAMIENTO",
            "Atender pagos pendientes",
            "Ponga al día los pagos atrasados inmediatamente",
            "+50 puntos",
        ))

    if score_total >= 700:
        recommendations.append(Recommendation(
            RecommendationPriority.LOW,
            "MANTENIMIENTO",
            "Mantener buen comportamiento",
            "Continúe con sus hábitos financieros saludables",
            "Estabilidad",
        ))

    return recommendations


# ============================================
# ENTRY POINTS
# ============================================

def compute_score(
    summary: Mapping[str, Any],
    obligations: Optional[Sequence[Mapping[str, Any]]] = None,
    pending_payments: Optional[Sequence[Mapping[str, Any]]] = None,
    computed_at: Optional[datetime] = None
) -> ScoreResult:
    """Compute the credit score from bureau data

    Args:
        summary: Bureau summary record for the subject
        obligations: Obligation detail records (empty when unavailable)
        pending_payments: Pending payment records (empty when unavailable)
        computed_at: Timestamp attached to the result (defaults to now)

    Returns:
        ScoreResult; identical inputs always produce identical scores and tier
    """
    obligations = list(obligations or [])
    pending_payments = list(pending_payments or [])

    components = {
        'payment_history': score_payment_history(summary),
        'debt_level': score_debt_level(summary, obligations),
        'credit_age': score_credit_age(summary),
        'credit_mix': score_credit_mix(summary, obligations),
        'recent_behavior': score_recent_behavior(summary, pending_payments),
    }

    score_total = sum(c.points for c in components.values())
    score_total = max(SCORE_MIN, min(SCORE_MAX, score_total))

    positives = [f for c in components.values() for f in c.positive_factors]
    negatives = [f for c in components.values() for f in c.negative_factors]

    return ScoreResult(
        score_total=score_total,
        risk_tier=determine_risk_tier(score_total),
        components=components,
        positive_factors=positives,
        negative_factors=negatives,
        recommendations=generate_recommendations(components, score_total),
        computed_at=computed_at or _utcnow(),
        no_history=False,
        base_data={
            'total_obligations': _count(summary.get('total_obligaciones')),
            'total_balance': _number(summary.get('saldo_total_actual')),
            'history_months': _count(summary.get('meses_historial_crediticio')),
        },
    )


def no_history_result(computed_at: Optional[datetime] = None) -> ScoreResult:
    """Terminal result for a subject the bureau has never reported

    Distinct from a genuine zero score: tier SIN_HISTORIAL and no_history=True.
    """
    maxima = (
        ('payment_history', PAYMENT_HISTORY_MAX),
        ('debt_level', DEBT_LEVEL_MAX),
        ('credit_age', CREDIT_AGE_MAX),
        ('credit_mix', CREDIT_MIX_MAX),
        ('recent_behavior', RECENT_BEHAVIOR_MAX),
    )
    components = {
        name: ComponentScore(
            name=name,
            points=0,
            max_points=max_points,
            negative_factors=[NO_DATA_FACTOR],
        )
        for name, max_points in maxima
    }
    return ScoreResult(
        score_total=0,
        risk_tier=NO_HISTORY_RISK_TIER,
        components=components,
        positive_factors=[],
        negative_factors=[NO_DATA_FACTOR],
        recommendations=[
            Recommendation(
                RecommendationPriority.HIGH,
                "INICIO_HISTORIAL",
                "Iniciar historial crediticio",
                "Contrate un producto de crédito básico y pague puntualmente para generar historial",
                "Habilita el cálculo de score",
            )
        ],
        computed_at=computed_at or _utcnow(),
        no_history=True,
    )
