import numpy as np
import unittest

from comtrade_MultiFileAnalyzer.computed.expression import process_equation
from comtrade_MultiFileAnalyzer.computed.prepare import extract_used_channels
from comtrade_MultiFileAnalyzer.core.axes import (MaxAxesCell, analyze_groups_and_publish,
                                                  axis_count_for_group, global_max_axes, group_axis_info)
from comtrade_MultiFileAnalyzer.core.errors import InvalidInput
from comtrade_MultiFileAnalyzer.core.merge import (channel_by_display_name, channels_for_file, file_index_for_time,
                                                   merge_file_sets, merge_summary, merge_time_sequential,
                                                   sample_index_in_file)
from comtrade_MultiFileAnalyzer.core.model import ChannelDescriptor, ParsedFileSet
from comtrade_MultiFileAnalyzer.core.units import axis_slot_for_unit, classify_unit, extract_unit


def _file(time, analog=(), digital=(), filename=None):
    """analog/digital: sequences of (name, unit, values)."""
    return ParsedFileSet(
        analog_channels=[ChannelDescriptor(channel_id=n, name=n, unit=u) for n, u, _ in analog],
        digital_channels=[ChannelDescriptor(channel_id=n, name=n, unit=u) for n, u, _ in digital],
        time=None if time is None else np.asarray(time, dtype=float),
        analog_data=[np.asarray(v, dtype=float) for _, _, v in analog],
        digital_data=[np.asarray(v, dtype=float) for _, _, v in digital],
        filename=filename,
    )


class UnitClassifierTests(unittest.TestCase):
    def test_table_after_upper_casing(self):
        expected = {
            "v": "voltage", "mV": "voltage", "kv": "voltage",
            "a": "current", "mA": "current", "KA": "current",
            "w": "power", "kW": "power", "MW": "power", "va": "power", "kVA": "power",
            "VAR": "power", "kvar": "power", "hz": "frequency", "Hz": "frequency",
        }
        for unit, tag in expected.items():
            self.assertEqual(classify_unit(unit), tag, unit)

    def test_unknown_and_empty_units(self):
        for unit in ("", None, "Ohm", "deg", 5):
            self.assertEqual(classify_unit(unit), "unknown")

    def test_axis_slots(self):
        self.assertEqual(axis_slot_for_unit("kV"), 0)
        self.assertEqual(axis_slot_for_unit("A"), 1)
        self.assertEqual(axis_slot_for_unit("Hz"), 1)
        self.assertEqual(axis_slot_for_unit("deg"), 0)

    def test_extract_unit_from_label(self):
        self.assertEqual(extract_unit("IA (kA)"), "kA")
        self.assertEqual(extract_unit("IA"), "")


class AxisPlannerTests(unittest.TestCase):
    def test_unique_slot_count(self):
        self.assertEqual(axis_count_for_group(["V", "V", "V"]), 1)
        self.assertEqual(axis_count_for_group(["V", "A", "A"]), 2)
        self.assertEqual(axis_count_for_group(["V", "A", "W", "Hz"]), 2)

    def test_global_max_of_groups(self):
        g0, g1 = ["V", "V", "V"], ["V", "A"]
        self.assertEqual(global_max_axes([g0, g1]), 2)
        self.assertEqual(global_max_axes([]), 1)

    def test_group_axis_info(self):
        info = group_axis_info([{"unit": "kV"}, {"unit": "A"}])
        self.assertEqual(info["required_axes"], 2)
        self.assertEqual(info["types"], ["current", "voltage"])

    def test_publish_skips_unassigned_and_joins_computed(self):
        cell = MaxAxesCell()
        seen = []
        cell.subscribe(seen.append)
        channels = [{"unit": "V"}, {"unit": "V"}, {"unit": "A"}]
        n = analyze_groups_and_publish(["G0", "G0", -1], channels, [{"group": "G0", "unit": "A"}], cell)
        self.assertEqual(n, 2)
        self.assertEqual(seen, [2])
        # computed channels never create a group of their own
        n = analyze_groups_and_publish(["G0", "G0", "-1"], channels, [{"group": "G9", "unit": "A"}], cell)
        self.assertEqual(n, 1)

    def test_cell_rejects_values_below_one(self):
        cell = MaxAxesCell(3)
        self.assertFalse(cell.set(0))
        self.assertEqual(cell.value, 3)


class MergerTests(unittest.TestCase):
    def test_single_file_passthrough(self):
        res = merge_file_sets([_file([0.0, 0.01, 0.02], analog=[("IA", "A", [1, 2, 3])])])
        self.assertFalse(res.is_merged)
        np.testing.assert_allclose(res.recording.time, [0.0, 0.01, 0.02])
        self.assertEqual(res.recording.analog_channels[0].display_name, "IA")
        self.assertIsNone(res.recording.file_offsets)

    def test_two_file_boundary_elision(self):
        a = _file([0.0, 0.01, 0.02], analog=[("IA", "A", [1, 2, 3])])
        b = _file([0.02, 0.03], analog=[("IA", "A", [4, 5])], filename="b.dat")
        res = merge_file_sets([a, b])
        rec = res.recording
        self.assertTrue(res.is_merged)
        np.testing.assert_allclose(rec.time, [0.0, 0.01, 0.02, 0.03])
        self.assertEqual([c.label for c in rec.analog_channels], ["IA", "b_IA"])
        # every row is laid out on the merged axis, NaN outside its own file
        np.testing.assert_allclose(rec.analog_data[0], [1, 2, 3, np.nan])
        np.testing.assert_allclose(rec.analog_data[1], [np.nan, np.nan, np.nan, 5])
        rec.validate()

    def test_time_concatenation_length_and_monotonicity(self):
        times = [[0.0, 1.0, 2.0], [5.0, 6.0], [10.0, 10.5, 11.0, 12.0]]
        merged, offsets, _ = merge_time_sequential(times)
        self.assertTrue(np.all(np.diff(merged) > 0))
        # each later file starts on the previous tail, so one sample per boundary is elided
        self.assertEqual(len(merged), 3 + 2 + 4 - 2)
        self.assertEqual([o.time_offset for o in offsets], [0.0, 2.0, 3.0])
        self.assertEqual(offsets[2].duration, 2.0)

    def test_files_without_time_are_skipped(self):
        merged, offsets, _ = merge_time_sequential([[0.0, 1.0], None, [0.0, 1.0]])
        self.assertEqual([o.file_index for o in offsets], [0, 2])
        np.testing.assert_allclose(merged, [0.0, 1.0, 2.0])

    def test_channel_identity(self):
        files = [
            _file([0.0, 1.0], analog=[("VA", "kV", [1, 1]), ("IA", "A", [2, 2])], digital=[("TRIP", "", [0, 1])]),
            _file([0.0, 1.0], analog=[("VA", "kV", [3, 3])], digital=[("TRIP", "", [1, 0])]),
            _file([0.0, 1.0], analog=[("VA", "kV", [4, 4])], filename="c.cfg"),
        ]
        rec = merge_file_sets(files).recording
        self.assertEqual([c.global_channel_index for c in rec.analog_channels], [0, 1, 2, 3])
        self.assertEqual([c.global_channel_index for c in rec.digital_channels], [0, 1])
        for c in rec.analog_channels + rec.digital_channels:
            self.assertIn(c.source_file_index, range(3))
            unprefixed = c.source_file_index == 0
            self.assertEqual(c.display_name == c.original_name, unprefixed)
        self.assertEqual(rec.analog_channels[2].label, "File2_VA")
        self.assertEqual(rec.analog_channels[3].label, "c_VA")
        self.assertEqual(len(set(rec.channel_ids("analog"))), 4)

    def test_duplicate_ids_stay_expression_identifiers(self):
        files = [_file([0.0, 1.0], analog=[("IA", "A", [1, 2]), ("IA", "A", [3, 4]), ("IA", "A", [5, 6])]),
                 _file([1.0, 2.0], analog=[("VA", "kV", [7, 8])])]
        ids = merge_file_sets(files).recording.channel_ids("analog")
        self.assertEqual(ids[:3], ["IA", "IA_2", "IA_3"])
        res = process_equation("S = IA_2 + IA_3")
        self.assertTrue(res.valid)
        self.assertEqual(extract_used_channels(res.internal), {"IA_2", "IA_3"})

    def test_first_file_with_filename_is_prefixed(self):
        files = [_file([0.0, 1.0], analog=[("IA", "A", [1, 2])], filename="a.cfg"),
                 _file([0.0, 1.0], analog=[("IA", "A", [3, 4])], filename="b.cfg")]
        rec = merge_file_sets(files).recording
        self.assertEqual([c.label for c in rec.analog_channels], ["a_IA", "b_IA"])

    def test_rejects_bad_input(self):
        with self.assertRaises(InvalidInput):
            merge_file_sets([])
        with self.assertRaises(InvalidInput):
            merge_file_sets([_file([0.0, 1.0], analog=[("IA", "A", [1, 2, 3])])])
        with self.assertRaises(InvalidInput):
            merge_file_sets([_file(None), _file(None)])

    def test_lookups(self):
        a = _file([0.0, 0.01, 0.02], analog=[("IA", "A", [1, 2, 3])])
        b = _file([0.02, 0.03], analog=[("IA", "A", [4, 5])], filename="b.dat")
        res = merge_file_sets([a, b])
        rec = res.recording
        self.assertEqual(file_index_for_time(rec.file_offsets, 0.005), 0)
        self.assertEqual(file_index_for_time(rec.file_offsets, 0.025), 1)
        self.assertIsNone(file_index_for_time(rec.file_offsets, 1.0))
        self.assertEqual(sample_index_in_file(rec.file_offsets, 2), (0, 2))
        self.assertEqual(sample_index_in_file(rec.file_offsets, 3), (1, 1))
        self.assertIsNone(sample_index_in_file(rec.file_offsets, 4))
        self.assertEqual(channel_by_display_name(rec, "b_IA"), ("analog", 1))
        self.assertEqual(channels_for_file(rec, 1), {"analog": [1], "digital": []})
        summary = merge_summary(res)
        self.assertEqual(summary["sample_count"].tolist(), [3, 2])
        self.assertEqual(summary["analog_channels"].tolist(), [1, 1])


if __name__ == "__main__":
    unittest.main()
