import unittest
from decimal import Decimal

from finally_api.networth import (
    MonthlyTotal,
    build_history,
    project_net_worth,
    shift_period,
    sum_by_period,
    trailing_periods,
)


class NetWorthTests(unittest.TestCase):
    def test_projection_extrapolates_average_growth(self) -> None:
        totals = [
            MonthlyTotal(2024, 3, Decimal("100")),
            MonthlyTotal(2024, 4, Decimal("120")),
            MonthlyTotal(2024, 5, Decimal("150")),
        ]

        projection = project_net_worth(totals, 2024, 5)

        self.assertEqual(len(projection), 7)
        self.assertEqual(projection[0].month, "May")
        self.assertEqual(projection[0].projected, Decimal("150"))
        self.assertEqual(projection[0].actual, Decimal("150"))
        self.assertEqual(projection[1].month, "Jun")
        self.assertEqual(projection[1].projected, Decimal("175"))
        self.assertIsNone(projection[1].actual)
        self.assertEqual(projection[2].projected, Decimal("200"))
        self.assertEqual(projection[6].month, "Nov")
        self.assertEqual(projection[6].projected, Decimal("300"))

    def test_projection_needs_two_months(self) -> None:
        self.assertEqual(project_net_worth([], 2024, 5), [])
        self.assertEqual(
            project_net_worth([MonthlyTotal(2024, 5, Decimal("150"))], 2024, 5), []
        )

    def test_projection_labels_wrap_into_next_year(self) -> None:
        totals = [
            MonthlyTotal(2024, 11, Decimal("10")),
            MonthlyTotal(2024, 12, Decimal("5")),
        ]

        projection = project_net_worth(totals, 2024, 12, horizon=2)

        self.assertEqual([point.month for point in projection], ["Dec", "Jan", "Feb"])
        self.assertEqual(projection[2].projected, Decimal("-5"))

    def test_sum_by_period_adds_assets_and_sorts(self) -> None:
        rows = [
            (2024, 5, Decimal("10")),
            (2024, 4, Decimal("7")),
            (2024, 5, 2.5),
        ]

        totals = sum_by_period(rows)

        self.assertEqual(
            totals,
            [
                MonthlyTotal(2024, 4, Decimal("7")),
                MonthlyTotal(2024, 5, Decimal("12.5")),
            ],
        )

    def test_history_skips_months_without_snapshots(self) -> None:
        history = build_history(
            [MonthlyTotal(2024, 6, Decimal("2")), MonthlyTotal(2024, 3, Decimal("1"))]
        )

        self.assertEqual([point.month for point in history], ["Mar", "Jun"])
        self.assertEqual([point.value for point in history], [Decimal("1"), Decimal("2")])

    def test_period_helpers(self) -> None:
        self.assertEqual(shift_period(2024, 1, -1), (2023, 12))
        self.assertEqual(shift_period(2024, 12, 1), (2025, 1))
        self.assertEqual(
            trailing_periods(2024, 2, 4),
            [(2023, 11), (2023, 12), (2024, 1), (2024, 2)],
        )


if __name__ == "__main__":
    unittest.main()
