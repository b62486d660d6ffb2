import unittest

import numpy as np

from comtrade_MultiFileAnalyzer.core.deltas import (TIME_ROW, ChartSeries, CursorSet, KeyEvent, collect_chart_deltas,
                                                    format_delta_time, format_scaled_value, format_table_data,
                                                    handle_cursor_shortcut, handle_zoom_key, nearest_index,
                                                    zoom_pan_range)
from comtrade_MultiFileAnalyzer.core.grouping import (ByAlias, ByID, ByIndex, auto_group_by_unit, build_chart_data,
                                                      build_chart_groups, filter_valid_indices,
                                                      group_assignment_list, parse_reference, resolve,
                                                      resolve_group_indices)
from comtrade_MultiFileAnalyzer.core.model import ChannelDescriptor, ComputedChannel, ComputedStats, Recording


def _recording():
    channels = [
        ChannelDescriptor(channel_id="VA", name="VA", unit="kV", group_id="G1"),
        ChannelDescriptor(channel_id="IA", name="IA", unit="A"),
        ChannelDescriptor(channel_id="IB", name="IB", unit="A"),
        ChannelDescriptor(channel_id="VB", name="VB", unit="kV"),
    ]
    time = np.linspace(0.0, 0.03, 4)
    data = [np.arange(4, dtype=float) + k for k in range(4)]
    return Recording(analog_channels=channels, digital_channels=[], time=time,
                     analog_data=data, digital_data=[])


def _chart(values, unit="A"):
    return ChartSeries(time=np.arange(6, dtype=float), series=[np.asarray(values, dtype=float)],
                       axes_scales=[1.0, 1.0], units=[unit], colors=["#f00"], labels=["IA"])


class ResolverTests(unittest.TestCase):
    def test_resolve_by_id_alias_and_index(self):
        rec = _recording()
        self.assertEqual(resolve(ByID("IB"), rec), 2)
        self.assertIsNone(resolve(ByID("nope"), rec))
        self.assertEqual(resolve(ByAlias("analog", 3), rec), 3)
        self.assertIsNone(resolve(ByAlias("digital", 0), rec))
        self.assertIsNone(resolve(ByIndex(9), rec))

    def test_parse_reference(self):
        self.assertEqual(parse_reference("a3"), ByAlias("analog", 3))
        self.assertEqual(parse_reference("d0"), ByAlias("digital", 0))
        self.assertEqual(parse_reference("IA"), ByID("IA"))
        self.assertEqual(parse_reference("a"), ByID("a"))

    def test_ids_win_over_index_fallbacks(self):
        self.assertEqual(resolve_group_indices([("IA", 5), (None, 2)], ["VA", "IA"]), [1, 2])
        self.assertEqual(filter_valid_indices([1, 2, 1, -1], 2), [1])

    def test_unknown_id_falls_back_to_stored_index(self):
        self.assertEqual(resolve_group_indices([("IA", 5), (None, 2), ("ZZ", 0)], ["VA", "IA"]), [1, 2, 0])
        self.assertEqual(resolve_group_indices([("ZZ", None)], ["VA"]), [])


class GroupingTests(unittest.TestCase):
    def test_auto_group_by_unit_family(self):
        channels = [ChannelDescriptor("VA", "VA", "kV"), ChannelDescriptor("IA", "IA", "A"),
                    ChannelDescriptor("VB", "VB", "V"), ChannelDescriptor("F", "F", "Hz")]
        groups = auto_group_by_unit(channels)
        self.assertEqual([g["name"] for g in groups], ["Voltages", "Currents", "Frequency"])
        self.assertEqual(groups[0]["indices"], [0, 2])

    def test_user_assignments_then_auto_groups(self):
        rec = _recording()
        groups = build_chart_groups(rec)
        self.assertEqual([(g.group_id, g.channel_indices) for g in groups],
                         [("G1", [0]), ("G0", [3]), ("G2", [1, 2])])
        self.assertEqual(group_assignment_list(rec, groups), ["G1", "G2", "G2", "G0"])

    def test_claimed_ids_are_skipped(self):
        groups = build_chart_groups(_recording(), claimed=("G0",))
        self.assertEqual([g.group_id for g in groups], ["G1", "G2", "G3"])

    def test_explicit_assignments_override_descriptors(self):
        rec = _recording()
        groups = build_chart_groups(rec, assignments=["G4", "G4", -1, "-1"])
        self.assertEqual(groups[0].group_id, "G4")
        self.assertEqual(groups[0].channel_ids, ["VA", "IA"])
        self.assertEqual(groups[0].axis_count, 2)

    def test_chart_data_includes_computed_members(self):
        rec = _recording()
        groups = build_chart_groups(rec)
        currents = groups[2]
        meta = ComputedChannel(id="I0", name="I0", equation="I0 = IA + IB", math_expression="IA + IB",
                               unit="A", group=currents.group_id, color="#123456", made_from="analog",
                               stats=ComputedStats(1.0, 7.0, 4.0, 4, 4), sample_count=4, created_at=0.0)
        rec.append_computed(meta, np.array([1.0, 3.0, 5.0, 7.0]))
        chart = build_chart_data(rec, currents)
        self.assertEqual(chart.labels, ["IA", "IB", "I0"])
        self.assertEqual(chart.axes_scales, [1.0, 1.0, 1.0, 1.0])
        self.assertEqual(chart.colors[2], "#123456")
        np.testing.assert_allclose(chart.series[2], [1.0, 3.0, 5.0, 7.0])
        self.assertEqual(len(build_chart_data(rec, currents, include_computed=False).series), 2)


class DeltaTests(unittest.TestCase):
    def test_two_cursor_delta(self):
        chart = _chart([10, 20, 30, 40, 50, 60])
        sections = collect_chart_deltas([1, 3], chart, "microseconds")
        self.assertEqual(len(sections), 1)
        self.assertEqual(sections[0]["deltaTime"], "2.00 μs")
        row = sections[0]["series"][0]
        self.assertEqual(row["v1Formatted"], "20.00 A")
        self.assertEqual(row["v2Formatted"], "40.00 A")
        self.assertEqual(row["deltaY"], 20)
        self.assertEqual(row["percentage"], 100.0)
        self.assertEqual(row["deltaFormatted"], "20.00 A")

    def test_swapping_cursors_flips_signs(self):
        chart = _chart([10, 20, 30, 40, 50, 60])
        fwd = collect_chart_deltas([1, 3], chart)[0]["series"][0]
        back = collect_chart_deltas([3, 1], chart)[0]["series"][0]
        self.assertEqual(back["deltaY"], -fwd["deltaY"])
        self.assertLess(back["percentage"], 0)

    def test_single_cursor_reports_values(self):
        sections = collect_chart_deltas([2.2], _chart([10, 20, 30, 40, 50, 60]))
        self.assertEqual(sections[0]["deltaTime"], "Line 1: 2.00")
        row = sections[0]["series"][0]
        self.assertEqual(row["v1"], 30.0)
        self.assertEqual(row["deltaFormatted"], "0.00 A")

    def test_zero_start_and_nan_values(self):
        rows = collect_chart_deltas([0, 1], _chart([0, 5, 1, 1, 1, 1]))[0]["series"]
        self.assertEqual(rows[0]["percentage"], 0.0)
        self.assertEqual(collect_chart_deltas([0, 1], _chart([np.nan, 5, 1, 1, 1, 1]))[0]["series"], [])
        self.assertEqual(collect_chart_deltas([], _chart([1] * 6)), [])

    def test_formatting(self):
        self.assertEqual(format_scaled_value(1500.0, 1.0, "V"), "1.50 kV")
        self.assertEqual(format_scaled_value(0.002, 1.0, "A"), "2.00 mA")
        self.assertEqual(format_scaled_value(2.0, 1000.0, "V"), "2.00 kV")
        self.assertEqual(format_delta_time(0.5, "milliseconds"), "0.50 ms")

    def test_non_finite_values_get_no_prefix(self):
        self.assertEqual(format_scaled_value(float("inf"), 1.0, "A"), "inf A")
        self.assertEqual(format_scaled_value(float("-inf"), 1000.0, "V"), "-inf V")
        self.assertEqual(format_scaled_value(float("nan"), 1.0, ""), "nan")

    def test_nearest_index(self):
        self.assertEqual(nearest_index([0.0, 1.0, 2.0], 1.4), 1)
        self.assertEqual(nearest_index([0.0, 1.0, 2.0], 9.0), 2)
        self.assertEqual(nearest_index([2.0, 0.0, 1.0], 0.1), 1)
        self.assertEqual(nearest_index([], 1.0), -1)

    def test_table_is_grouped_per_pair(self):
        chart = _chart([10, 20, 30, 40, 50, 60])
        sections = collect_chart_deltas([1, 3, 4], chart, "microseconds")
        table = format_table_data(sections, 3, [1.0, 3.0, 4.0])
        self.assertEqual(table[0]["channel"], TIME_ROW)
        self.assertEqual(table[0]["delta1"], "1.00 μs")
        ia = table[1]
        self.assertEqual([ia["v0"], ia["v1"], ia["v2"]], ["20.00 A", "40.00 A", "50.00 A"])
        self.assertEqual(ia["delta0"], "20.00 A")
        self.assertEqual(ia["percentage1"], 25.0)


class CursorTests(unittest.TestCase):
    def test_click_near_existing_cursor_removes_it(self):
        cursors = CursorSet([1.0])
        self.assertEqual(cursors.toggle(1.01, (0.0, 5.0)), "removed")
        self.assertEqual(cursors.as_list(), [])
        self.assertEqual(cursors.toggle(2.0, (0.0, 5.0)), "added")

    def test_add_coalesces_close_positions(self):
        cursors = CursorSet([1.0, 3.0])
        self.assertFalse(cursors.add(1.01, (0.0, 5.0)))
        self.assertEqual(cursors.current, 0)
        self.assertTrue(cursors.add(2.0, (0.0, 5.0)))
        self.assertEqual(len(cursors), 3)

    def test_keyboard_shortcuts(self):
        cursors = CursorSet([1.0, 2.0, 3.0])
        self.assertIsNone(handle_cursor_shortcut(KeyEvent(key="2"), cursors))
        self.assertEqual(handle_cursor_shortcut(KeyEvent(key="2", alt=True), cursors), "previous")
        self.assertEqual(handle_cursor_shortcut(KeyEvent(key="4", alt=True), cursors), "delete")
        self.assertEqual(cursors.as_list(), [1.0, 3.0])
        self.assertEqual(handle_cursor_shortcut(KeyEvent(key="1", alt=True), cursors, 4.0, (0.0, 5.0)), "add")
        self.assertEqual(handle_cursor_shortcut(KeyEvent(key="0", alt=True), cursors), "clear")
        self.assertEqual(len(cursors), 0)
        self.assertIsNone(handle_cursor_shortcut(KeyEvent(key="3", alt=True), cursors))

    def test_zoom_and_pan(self):
        self.assertEqual(zoom_pan_range(0.0, 10.0, "zoom", "in"), (1.0, 9.0))
        self.assertEqual(zoom_pan_range(0.0, 10.0, "pan", "right"), (2.0, 12.0))
        self.assertEqual(handle_zoom_key(KeyEvent(key="<", shift=True), (0.0, 10.0)), (1.0, 9.0))
        self.assertEqual(handle_zoom_key(KeyEvent(key="ArrowLeft", alt=True), (0.0, 10.0)), (-2.0, 8.0))
        self.assertIsNone(handle_zoom_key(KeyEvent(key="<", shift=True, ctrl=True), (0.0, 10.0)))
        with self.assertRaises(ValueError):
            zoom_pan_range(0.0, 1.0, "spin", "in")


if __name__ == "__main__":
    unittest.main()
