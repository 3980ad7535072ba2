"""
Unit tests for the credit scoring engine.

Covers each component's thresholds, tier mapping, recommendations and the
no-history terminal result.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from scoring_engine import (
    ComponentScore,
    NO_DATA_FACTOR,
    NO_HISTORY_TIER,
    RecommendationPriority,
    compute_score,
    determine_risk_tier,
    no_history_result,
    score_credit_age,
    score_credit_mix,
    score_debt_level,
    score_payment_history,
    score_recent_behavior,
)


@pytest.fixture
def troubled_summary():
    return {
        'max_dias_atraso': 120,
        'total_pagos_atrasados': 10,
        'obligaciones_vencidas': 3,
        'obligaciones_cartera_vencida': 2,
        'saldo_total_actual': 2_000_000,
        'monto_total_vencido': 1_000_000,
        'meses_historial_crediticio': 0,
        'obligaciones_reestructuradas': 3,
    }


class TestComputeScore:
    """End-to-end scoring over a bureau summary."""

    def test_clean_history_scores_900(self, clean_summary):
        """A spotless 72-month history with no obligations scores 900.

        900 sits in the inclusive 800-1000 band, so it is EXCELENTE by the
        tier table even though one worked example labels it MUY_BUENO.
        """
        result = compute_score(clean_summary, [], [])

        assert result.components['payment_history'].points == 350
        assert result.components['debt_level'].points == 300
        assert result.components['credit_age'].points == 150
        assert result.components['credit_mix'].points == 0
        assert result.components['recent_behavior'].points == 100
        assert result.score_total == 900
        assert result.risk_tier.label == "EXCELENTE"
        assert result.no_history is False

    def test_clean_history_only_maintenance_recommendation(self, clean_summary):
        result = compute_score(clean_summary)

        assert [r.category for r in result.recommendations] == ["MANTENIMIENTO"]
        assert result.recommendations[0].priority == RecommendationPriority.LOW

    def test_worst_case_floors_at_zero(self, troubled_summary):
        obligations = [{'limite_credito': 10000, 'saldo_actual': 9000, 'tipo_credito': None}]
        pending = [{'dias_atraso_calculado': 45}] * 3

        result = compute_score(troubled_summary, obligations, pending)

        for component in result.components.values():
            assert component.points == 0
        assert result.score_total == 0
        assert result.risk_tier.label == "MUY_MALO"

    def test_worst_case_recommendations_in_rule_order(self, troubled_summary):
        result = compute_score(troubled_summary, [], [{'dias_atraso_calculado': 90}] * 3)

        assert [r.category for r in result.recommendations] == [
            "HISTORIAL_PAGOS", "ENDEUDAMIENTO", "ANTIGUEDAD", "COMPORTAMIENTO"
        ]
        assert result.recommendations[2].priority == RecommendationPriority.MEDIUM

    def test_deterministic(self, troubled_summary, clean_summary):
        """Identical inputs give identical totals and tiers."""
        for summary in (troubled_summary, clean_summary):
            first = compute_score(summary, [], [])
            second = compute_score(summary, [], [])
            assert first.score_total == second.score_total
            assert first.risk_tier == second.risk_tier

    def test_factors_consolidated_in_component_order(self, clean_summary):
        result = compute_score(clean_summary)

        assert result.positive_factors[0] == "Sin atrasos registrados"
        assert "Sin diversificación de créditos" in result.negative_factors

    def test_to_dict_shape(self, clean_summary):
        computed_at = datetime(2026, 3, 1, tzinfo=timezone.utc)
        data = compute_score(clean_summary, computed_at=computed_at).to_dict()

        assert data['score_total'] == 900
        assert data['risk_tier'] == {
            'label': 'EXCELENTE',
            'description': 'Riesgo crediticio mínimo - Excelente perfil',
            'range': '800-1000',
        }
        assert data['computed_at'] == computed_at.isoformat()
        assert set(data['components']) == {
            'payment_history', 'debt_level', 'credit_age', 'credit_mix', 'recent_behavior'
        }
        assert data['components']['credit_age']['percentage'] == 100.0

    def test_string_numerics_accepted(self):
        """Bureau decimals serialized as strings are coerced."""
        summary = {'max_dias_atraso': '15', 'meses_historial_crediticio': '40'}
        result = compute_score(summary)

        assert result.components['payment_history'].points == 300
        assert result.components['credit_age'].points == 120


class TestPaymentHistory:

    @pytest.mark.parametrize("days,expected", [
        (0, 350), (30, 300), (31, 250), (60, 250), (90, 200), (91, 100),
    ])
    def test_days_late_tiers(self, days, expected):
        assert score_payment_history({'max_dias_atraso': days}).points == expected

    @pytest.mark.parametrize("late,expected", [(0, 350), (2, 320), (5, 290), (6, 250)])
    def test_late_payment_count_tiers(self, late, expected):
        assert score_payment_history({'total_pagos_atrasados': late}).points == expected

    def test_overdue_and_collections_penalties(self):
        component = score_payment_history({
            'obligaciones_vencidas': 2,
            'obligaciones_cartera_vencida': 1,
        })

        assert component.points == 350 - 80 - 50
        assert "2 obligación(es) vencida(s)" in component.negative_factors
        assert "1 en cartera vencida" in component.negative_factors


class TestDebtLevel:

    def test_moderate_utilization(self):
        obligations = [
            {'limite_credito': 10000, 'saldo_actual': 4000},
            {'limite_credito': 10000, 'saldo_actual': 6000},
        ]
        component = score_debt_level({}, obligations)

        assert component.points == 250
        assert component.details['average_utilization'] == 0.5
        assert "Utilización de crédito moderada (30-50%)" in component.negative_factors

    def test_obligations_without_limit_ignored(self):
        component = score_debt_level({}, [{'limite_credito': 0, 'saldo_actual': 5000}])

        assert component.points == 300
        assert 'average_utilization' not in component.details

    def test_low_overdue_ratio_has_matching_factor(self):
        component = score_debt_level(
            {'saldo_total_actual': 100000, 'monto_total_vencido': 4000}, []
        )

        assert component.points == 270
        assert component.negative_factors == ["Monto vencido bajo (≤5% del saldo)"]
        assert "Nivel de deuda bajo" in component.positive_factors

    def test_overdue_without_balance_is_worst_tier(self):
        component = score_debt_level({'saldo_total_actual': 0, 'monto_total_vencido': 500}, [])

        assert component.points == 180
        assert component.details['overdue_ratio'] == 1.0

    def test_zero_balance_zero_overdue(self):
        component = score_debt_level({'saldo_total_actual': 0, 'monto_total_vencido': 0}, [])

        assert component.points == 300
        assert component.positive_factors == ["Sin montos vencidos"]

    def test_large_balance_penalty(self):
        component = score_debt_level({'saldo_total_actual': 1_500_000}, [])

        assert component.points == 270
        assert "Nivel de deuda alto (>$1,000,000)" in component.negative_factors


class TestCreditAge:

    @pytest.mark.parametrize("months,expected", [
        (72, 150), (60, 150), (36, 120), (24, 90), (12, 60), (1, 30), (0, 0),
    ])
    def test_age_tiers(self, months, expected):
        assert score_credit_age({'meses_historial_crediticio': months}).points == expected

    def test_short_history_is_negative_factor(self):
        component = score_credit_age({'meses_historial_crediticio': 18})
        assert component.negative_factors == ["Historial crediticio limitado (1-2 años)"]


class TestCreditMix:

    @staticmethod
    def _obligations(*types):
        return [{'tipo_credito': t} for t in types]

    @pytest.mark.parametrize("types,expected", [
        (("TDC", "HIPOTECARIO", "AUTOMOTRIZ", "PERSONAL"), 100),
        (("TDC", "HIPOTECARIO", "AUTOMOTRIZ"), 75),
        (("TDC", "HIPOTECARIO", "TDC"), 50),
        (("TDC",), 25),
        ((), 0),
    ])
    def test_distinct_type_tiers(self, types, expected):
        assert score_credit_mix({}, self._obligations(*types)).points == expected

    def test_missing_type_not_counted(self):
        obligations = self._obligations("TDC", None) + [{}]

        assert score_credit_mix({}, obligations).points == 25

    def test_closed_bonus_capped_at_25(self):
        component = score_credit_mix(
            {'obligaciones_cerradas': 10}, self._obligations("TDC", "PERSONAL")
        )

        assert component.points == 75
        assert "10 crédito(s) cerrado(s) exitosamente" in component.positive_factors

    def test_closed_bonus_capped_at_component_max(self):
        component = score_credit_mix(
            {'obligaciones_cerradas': 3}, self._obligations("A", "B", "C", "D")
        )
        assert component.points == 100


class TestRecentBehavior:

    def test_one_severely_late_payment(self):
        pending = [{'dias_atraso_calculado': 45}, {'dias_atraso_calculado': 10}]
        component = score_recent_behavior({}, pending)

        assert component.points == 70
        assert component.details['severely_late_payments'] == 1

    def test_thirty_days_is_not_severe(self):
        component = score_recent_behavior({}, [{'dias_atraso_calculado': 30}])
        assert component.points == 100

    def test_many_late_and_restructured(self):
        pending = [{'dias_atraso_calculado': 40}] * 3
        component = score_recent_behavior({'obligaciones_reestructuradas': 1}, pending)

        assert component.points == 20

    def test_healthy_obligations_factor(self):
        component = score_recent_behavior(
            {'total_obligaciones': 5, 'obligaciones_vigentes': 4}, []
        )
        assert "Mayoría de obligaciones vigentes y saludables" in component.positive_factors


class TestRiskTiers:

    @pytest.mark.parametrize("score,label", [
        (1000, "EXCELENTE"), (800, "EXCELENTE"), (799, "MUY_BUENO"), (700, "MUY_BUENO"),
        (699, "BUENO"), (600, "BUENO"), (599, "REGULAR"), (500, "REGULAR"),
        (499, "MALO"), (400, "MALO"), (399, "MUY_MALO"), (0, "MUY_MALO"),
    ])
    def test_tier_boundaries(self, score, label):
        assert determine_risk_tier(score).label == label

    def test_out_of_range_falls_back(self):
        assert determine_risk_tier(-5).label == "MUY_MALO"

    def test_range_string(self):
        assert determine_risk_tier(650).range == "600-699"


class TestNoHistory:
    """Terminal result when the bureau has never reported the subject."""

    def test_distinct_from_zero_score(self):
        result = no_history_result()

        assert result.score_total == 0
        assert result.no_history is True
        assert result.risk_tier.label == NO_HISTORY_TIER

    def test_all_components_zero_with_no_data_factor(self):
        result = no_history_result()

        assert len(result.components) == 5
        for component in result.components.values():
            assert component.points == 0
            assert component.negative_factors == [NO_DATA_FACTOR]

    def test_single_fixed_recommendation(self):
        result = no_history_result()

        assert len(result.recommendations) == 1
        assert result.recommendations[0].category == "INICIO_HISTORIAL"
        assert result.recommendations[0].priority == RecommendationPriority.HIGH


class TestComponentScore:

    def test_percentage_one_decimal(self):
        component = ComponentScore(name="payment_history", points=300, max_points=350)
        assert component.percentage == 85.7

    def test_to_dict_includes_details_only_when_present(self):
        bare = ComponentScore(name="x", points=10, max_points=100).to_dict()
        detailed = ComponentScore(name="x", points=10, max_points=100, details={'k': 1}).to_dict()

        assert 'details' not in bare
        assert detailed['details'] == {'k': 1}
