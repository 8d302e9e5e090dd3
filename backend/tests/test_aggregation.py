"""
Tests for metric normalization and aggregation.
"""

import pytest

from adconnect.adapters.base import MetricRow
from adconnect.schemas import MetricPayload
from adconnect.services.aggregation import aggregate_metrics, aggregate_rows, normalize_row


def test_ratios_are_recomputed_from_totals():
    first = MetricPayload(impressions=1000, clicks=50)
    second = MetricPayload(impressions=2000, clicks=100)

    total = aggregate_metrics([first, second])

    assert total.impressions == 3000
    assert total.clicks == 150
    assert total.ctr == pytest.approx(5.0)


def test_input_ratios_are_ignored():
    skewed = [
        MetricPayload(impressions=10, clicks=5, spend=1.0, ctr=50.0),
        MetricPayload(impressions=10_000, clicks=100, spend=100.0, ctr=1.0),
    ]

    total = aggregate_metrics(skewed)

    # 105 / 10010, not the 25.5% mean of the row ratios
    assert total.ctr == pytest.approx(1.05)
    assert total.cpc == pytest.approx(0.96)
    assert total.cpm == pytest.approx(10.09)


def test_conversion_ratios():
    total = aggregate_metrics(
        [
            MetricPayload(clicks=200, spend=300.0, conversions=10, conversion_value=900.0),
            MetricPayload(clicks=50, spend=100.0, conversions=0),
        ]
    )

    assert total.conversions == 10
    assert total.cost_per_conversion == pytest.approx(40.0)
    assert total.conversion_rate == pytest.approx(4.0)
    assert total.conversion_value == pytest.approx(900.0)


def test_empty_input_yields_zeros():
    total = aggregate_metrics([])

    assert total == MetricPayload()


def test_zero_denominators_do_not_divide():
    total = aggregate_metrics([MetricPayload(spend=25.0)])

    assert total.ctr == 0.0
    assert total.cpc == 0.0
    assert total.cpm == 0.0
    assert total.cost_per_conversion == 0.0


def test_normalize_row():
    payload = normalize_row(
        MetricRow(object_id="c1", impressions=4000, clicks=80, spend=20.0, reach=3500, conversions=4)
    )

    assert payload.reach == 3500
    assert payload.ctr == pytest.approx(2.0)
    assert payload.cpc == pytest.approx(0.25)
    assert payload.cpm == pytest.approx(5.0)
    assert payload.cost_per_conversion == pytest.approx(5.0)
    assert payload.conversion_rate == pytest.approx(5.0)


def test_rows_are_summed_before_rounding():
    # e.g. 4000 micros each; rounding per row would lose all of it
    rows = [MetricRow(object_id="c1", impressions=100, clicks=1, spend=0.004) for _ in range(3)]

    total = aggregate_rows(rows)

    assert total.impressions == 300
    assert total.clicks == 3
    assert total.spend == pytest.approx(0.01)
    assert total.cpm == pytest.approx(0.04)


def test_aggregate_rows_of_nothing():
    assert aggregate_rows([]) == MetricPayload()
