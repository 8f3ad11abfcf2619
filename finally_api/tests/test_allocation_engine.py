import unittest
from decimal import Decimal

from finally_api.allocation_engine import AssetSnapshot, compute_allocation, previous_period
from finally_api.percentages import AllocationShare


def snapshot(asset_id, name, category, total, has_market_cap_targets=False):
    return AssetSnapshot(
        asset_id=asset_id,
        asset_name=name,
        category=category,
        category_name=category.title(),
        total=Decimal(total),
        has_market_cap_targets=has_market_cap_targets,
    )


class AllocationEngineTests(unittest.TestCase):
    def test_groups_by_category_and_compares_with_targets(self) -> None:
        current = [
            snapshot(1, "Apple", "SINGLE_STOCKS", "60", True),
            snapshot(2, "Nvidia", "SINGLE_STOCKS", "30", True),
            snapshot(3, "Savings", "CASH", "60"),
        ]
        previous = [
            snapshot(1, "Apple", "SINGLE_STOCKS", "50", True),
            snapshot(3, "Savings", "CASH", "50"),
            snapshot(4, "Bitcoin", "CRYPTO", "20", True),
        ]
        targets = {
            "SINGLE_STOCKS": AllocationShare.from_fraction("0.5"),
            "CASH": AllocationShare.from_fraction("0.5"),
        }

        summary = compute_allocation(current, previous, targets)

        self.assertEqual(summary.total_value, Decimal("150"))
        self.assertEqual(summary.previous_total_value, Decimal("120"))
        self.assertEqual(summary.total_change, Decimal("30"))

        by_code = {category.category: category for category in summary.categories}
        self.assertEqual(set(by_code), {"SINGLE_STOCKS", "CASH"})

        stocks = by_code["SINGLE_STOCKS"]
        self.assertEqual(stocks.current_value, Decimal("90"))
        self.assertEqual(stocks.previous_value, Decimal("50"))
        self.assertEqual(stocks.current_percentage, Decimal("60"))
        self.assertEqual(stocks.target_percentage, Decimal("50"))
        self.assertEqual(stocks.target_value, Decimal("75"))
        self.assertEqual(stocks.delta, Decimal("15"))
        self.assertEqual(stocks.delta_percentage, Decimal("10"))
        self.assertTrue(stocks.has_market_cap_targets)
        self.assertEqual([asset.name for asset in stocks.assets], ["Apple", "Nvidia"])
        self.assertEqual(stocks.assets[0].previous_value, Decimal("50"))
        self.assertEqual(stocks.assets[1].previous_value, Decimal("0"))

        cash = by_code["CASH"]
        self.assertEqual(cash.current_percentage, Decimal("40"))
        self.assertEqual(cash.delta, Decimal("-15"))
        self.assertEqual(cash.delta_percentage, Decimal("-10"))

    def test_category_without_target_has_zero_target(self) -> None:
        summary = compute_allocation(
            [snapshot(1, "House", "REAL_ESTATE", "200")], [], {}
        )

        category = summary.categories[0]
        self.assertEqual(category.target_percentage, Decimal("0"))
        self.assertEqual(category.target_value, Decimal("0"))
        self.assertEqual(category.delta, Decimal("200"))
        self.assertEqual(category.previous_percentage, Decimal("0"))

    def test_empty_portfolio_reports_nothing(self) -> None:
        summary = compute_allocation([], [], {"CASH": AllocationShare.from_percent(100)})

        self.assertEqual(summary.categories, [])
        self.assertEqual(summary.total_value, Decimal("0"))
        self.assertEqual(summary.total_change, Decimal("0"))

    def test_previous_period_wraps_january(self) -> None:
        self.assertEqual(previous_period(2024, 1), (2023, 12))
        self.assertEqual(previous_period(2024, 7), (2024, 6))


if __name__ == "__main__":
    unittest.main()
