import unittest
from decimal import Decimal

from finally_api.percentages import NO_SHARE, AllocationShare, percent_of


class AllocationShareTests(unittest.TestCase):
    def test_percent_is_stored_as_fraction(self) -> None:
        share = AllocationShare.from_percent(25)

        self.assertEqual(share.fraction, Decimal("0.25"))
        self.assertEqual(share.as_percent(), Decimal("25"))
        self.assertEqual(share.of(Decimal("200")), Decimal("50"))

    def test_stored_fraction_reads_back_as_same_percent(self) -> None:
        share = AllocationShare.from_fraction(AllocationShare.from_percent("33.5").fraction)

        self.assertEqual(share.as_percent(), Decimal("33.5"))

    def test_rejects_out_of_range_values(self) -> None:
        with self.assertRaises(ValueError):
            AllocationShare.from_percent(101)
        with self.assertRaises(ValueError):
            AllocationShare.from_percent(-1)
        with self.assertRaises(ValueError):
            AllocationShare.from_fraction("1.5")

    def test_percent_of_zero_whole_is_zero(self) -> None:
        self.assertEqual(percent_of(Decimal("5"), Decimal("0")), Decimal("0"))
        self.assertEqual(percent_of(Decimal("5"), Decimal("20")), Decimal("25"))
        self.assertEqual(NO_SHARE.as_percent(), Decimal("0"))


if __name__ == "__main__":
    unittest.main()
