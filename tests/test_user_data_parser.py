import unittest

from services.ai.chat.user_data_parser import extract_user_data, label_key, month_number


class TestUserDataParser(unittest.TestCase):
    def test_month_value_pairs(self):
        data = extract_user_data("buatkan grafik penjualan: Jan 100, Feb 120, Mar 90")
        self.assertIsNotNone(data)
        self.assertEqual(data.labels, ["Januari", "Februari", "Maret"])
        self.assertEqual(data.values, [100.0, 120.0, 90.0])
        self.assertEqual(data.data_points, 3)
        self.assertFalse(data.is_comparison)

    def test_label_value_pairs_with_units(self):
        data = extract_user_data("Produk A: 5 jt, Produk B: 2,5 jt")
        self.assertIsNotNone(data)
        self.assertEqual(data.labels, ["Produk A", "Produk B"])
        self.assertEqual(data.values, [5_000_000.0, 2_500_000.0])

    def test_label_value_pairs_without_colon(self):
        data = extract_user_data("Buat chart: Produk A 100, Produk B 200, Produk C 300")
        self.assertIsNotNone(data)
        self.assertEqual(data.labels, ["Produk A", "Produk B", "Produk C"])
        self.assertEqual(data.values, [100.0, 200.0, 300.0])

    def test_thousand_separators(self):
        data = extract_user_data("Q1: 1.250.000, Q2: 1.500.000")
        self.assertEqual(data.values, [1_250_000.0, 1_500_000.0])

    def test_year_after_month_stays_in_label(self):
        data = extract_user_data("Buat grafik penjualan Jan 2024 100, Feb 2024 150, Mar 2024 130")
        self.assertIsNotNone(data)
        self.assertEqual(data.labels, ["Januari 2024", "Februari 2024", "Maret 2024"])
        self.assertEqual(data.values, [100.0, 150.0, 130.0])

    def test_year_after_quarter_stays_in_label(self):
        data = extract_user_data("Q1 2024: 100, Q2 2024: 200")
        self.assertEqual(data.labels, ["Q1 2024", "Q2 2024"])
        self.assertEqual(data.values, [100.0, 200.0])

    def test_year_like_value_with_unit_is_a_value(self):
        data = extract_user_data("Jan 2000jt, Feb 2500jt")
        self.assertEqual(data.labels, ["Januari", "Februari"])
        self.assertEqual(data.values, [2_000_000_000.0, 2_500_000_000.0])

    def test_comparison_flag(self):
        data = extract_user_data("bandingkan Jan 10 dan Feb 20")
        self.assertTrue(data.is_comparison)

    def test_single_point_is_not_a_dataset(self):
        self.assertIsNone(extract_user_data("omzet: 100"))
        self.assertIsNone(extract_user_data("halo apa kabar"))


class TestGoldenInputs(unittest.TestCase):
    """Messy real-world inputs and the exact dataset they must produce."""

    def _points(self, message):
        data = extract_user_data(message)
        self.assertIsNotNone(data, message)
        return list(zip(data.labels, data.values))

    def test_mixed_unit_formats(self):
        points = self._points("Januari 500jt\nFeb 600\nMaret: 750 juta\nApril = 0.9B")
        self.assertEqual(
            points,
            [
                ("Januari", 500_000_000.0),
                ("Februari", 600_000_000.0),
                ("Maret", 750_000_000.0),
                ("April", 900_000_000.0),
            ],
        )

    def test_month_typos(self):
        points = self._points("Januri 500jt, Febuari 600jt, Maret 700jt")
        self.assertEqual(
            points,
            [("Januari", 500_000_000.0), ("Februari", 600_000_000.0), ("Maret", 700_000_000.0)],
        )

    def test_indonesian_thousands(self):
        points = self._points("Januari 1.500.000, Februari 2.500.000")
        self.assertEqual(points, [("Januari", 1_500_000.0), ("Februari", 2_500_000.0)])

    def test_sentence_wrapped(self):
        points = self._points("Tampilkan data penjualan: Januari 500jt, Februari 600jt, Maret 750jt")
        self.assertEqual([label for label, _ in points], ["Januari", "Februari", "Maret"])
        self.assertEqual(points[2][1], 750_000_000.0)

    def test_labels_are_not_mutated(self):
        points = self._points("Januari 100, Februari 200, Maret 300")
        self.assertEqual(points, [("Januari", 100.0), ("Februari", 200.0), ("Maret", 300.0)])

    def test_negative_value(self):
        points = self._points("Januari 500jt\nFebruari -300jt\nMaret 800jt")
        self.assertEqual(points[1], ("Februari", -300_000_000.0))

    def test_outlier_is_kept(self):
        points = self._points("Januari 500jt, Februari 600jt, Maret 50000jt, April 800jt")
        self.assertEqual(points[2], ("Maret", 50_000_000_000_000.0))

    def test_zero_value(self):
        points = self._points("Januari 500jt, Februari 0, Maret 750jt")
        self.assertEqual(points[1], ("Februari", 0.0))

    def test_short_months_are_normalised(self):
        points = self._points("Jan 900, Feb 750, Mar 600, Apr 500")
        self.assertEqual(
            points,
            [("Januari", 900.0), ("Februari", 750.0), ("Maret", 600.0), ("April", 500.0)],
        )

    def test_missing_value_is_skipped(self):
        points = self._points("Q1: 2.5M\nQ2: —\nQ3: 4.1M")
        self.assertEqual(points, [("Q1", 2_500_000.0), ("Q3", 4_100_000.0)])

    def test_no_dataset(self):
        self.assertIsNone(extract_user_data("hello world this is not data"))
        self.assertIsNone(extract_user_data("Januari 500jt"))
        self.assertIsNone(extract_user_data(""))


class TestLabelKey(unittest.TestCase):
    def test_month_spellings_share_a_key(self):
        self.assertEqual(label_key("Januari"), label_key("January"))
        self.assertEqual(label_key("Jan 2024"), label_key("Januari 2024"))
        self.assertEqual(label_key("Kuartal 1"), label_key("Q1"))
        self.assertNotEqual(label_key("Jan"), label_key("Feb"))

    def test_month_number(self):
        self.assertEqual(month_number("Septmber"), 9)
        self.assertEqual(month_number("desember"), 12)
        self.assertIsNone(month_number("produk"))


if __name__ == "__main__":
    unittest.main()
