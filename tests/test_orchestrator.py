import unittest

import numpy as np

from comtrade_MultiFileAnalyzer.core.deltas import TIME_ROW
from comtrade_MultiFileAnalyzer.core.errors import ErrorDescriptor, ErrorKind
from comtrade_MultiFileAnalyzer.core.events import COMPUTED_CHANNEL_SAVED
from comtrade_MultiFileAnalyzer.core.model import ChannelDescriptor, ParsedFileSet
from comtrade_MultiFileAnalyzer.core.orchestrator import Orchestrator


def _file_set(with_ia=True):
    analog = [("VA", "kV", [1.0, 2.0, 3.0, 4.0])]
    if with_ia:
        analog.append(("IA", "A", [10.0, 20.0, 30.0, 40.0]))
    analog.append(("IB", "A", [5.0, 5.0, 5.0, 5.0]))
    return ParsedFileSet(
        analog_channels=[ChannelDescriptor(channel_id=n, name=n, unit=u) for n, u, _ in analog],
        digital_channels=[ChannelDescriptor(channel_id="TRIP", name="TRIP")],
        time=np.array([0.0, 0.01, 0.02, 0.03]),
        analog_data=[np.asarray(v) for _, _, v in analog],
        digital_data=[np.array([0.0, 0.0, 1.0, 1.0])],
    )


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        self.orch = Orchestrator()
        self.orch.load_file_sets([_file_set()])

    def tearDown(self):
        self.orch.close()

    def envelope(self, etype, **payload):
        return self.orch.handle_envelope({"source": "ChildWindow", "type": etype, "payload": payload})

    def compute(self, expression, **kw):
        rid = self.orch.submit_computed(expression, **kw)
        self.assertIsInstance(rid, str)
        self.orch.wait(rid, timeout=10)
        return rid


class LoadTests(OrchestratorTestCase):
    def test_groups_state_and_charts(self):
        orch = self.orch
        self.assertEqual([(g.group_id, g.channel_ids) for g in orch.groups],
                         [("G0", ["VA"]), ("G1", ["IA", "IB"])])
        self.assertEqual(orch.channel_state.get("analog.groups"), ["G0", "G1", "G1"])
        self.assertEqual(orch.channel_state.get("analog.axesScales"), [1.0, 1.0, 1.0, 1.0])
        self.assertEqual(orch.channel_state.get("digital.yLabels"), ["TRIP"])
        self.assertEqual([c.user_group_id for c in orch.charts.get_by_type("analog")], ["G0", "G1"])
        self.assertEqual(orch.charts.get_by_type("digital")[0].user_group_id, "digital")
        self.assertEqual(orch.max_axes.value, 1)
        # a fresh load is not undoable
        self.assertEqual(orch.channel_state.get_history(), [])

    def test_regrouping_replans_axes(self):
        self.envelope("callback_group", channelID="IA", newValue="G0")
        self.orch.channel_state.flush()
        self.assertEqual([g.channel_ids for g in self.orch.groups], [["VA", "IA"], ["IB"]])
        self.assertEqual(self.orch.max_axes.value, 2)

    def test_load_errors_are_returned(self):
        with self.assertLogs("comtrade_MultiFileAnalyzer.core.orchestrator", level="ERROR"):
            desc = self.orch.load_file_sets([])
        self.assertIsInstance(desc, ErrorDescriptor)
        self.assertEqual(desc.kind, ErrorKind.INVALID_INPUT)
        self.assertIs(self.orch.errors[-1], desc)
        # the previous recording stays installed
        self.assertEqual(self.orch.recording.sample_count, 4)


class ComputedTests(OrchestratorTestCase):
    def test_result_becomes_channel(self):
        saved = []
        self.orch.events.on(COMPUTED_CHANNEL_SAVED, saved.append)
        rid = self.compute("P = IA * 2", unit="A")
        self.assertEqual(self.orch.handled, [rid])
        comp = self.orch.recording.computed_channels[0]
        self.assertEqual((comp.name, comp.unit, comp.made_from, comp.group), ("P", "A", "analog", "G2"))
        np.testing.assert_allclose(self.orch.recording.computed_values["P"], [20.0, 40.0, 60.0, 80.0])
        self.assertEqual(self.orch.channel_state.get("computed.yLabels"), ["P"])
        self.assertIsNotNone(self.orch.charts.get_by_group_id("G2"))
        self.assertEqual(saved[0]["channelId"], "P")
        self.assertNotIn(rid, self.orch.progress)

    def test_finished_requests_release_inputs(self):
        rids = [self.compute(f"C{k} = IA * {k}") for k in range(5)]
        self.assertEqual(self.orch.handled, rids)
        self.assertEqual(self.orch.progress, {})
        for rid in rids:
            self.assertEqual(self.orch.workers.status(rid), "completed")
            self.assertIsNone(self.orch.workers.worker(rid))

    def test_joining_an_existing_group(self):
        self.compute("S = IA + IB", unit="A", group="G1")
        self.assertEqual(len(self.orch.charts.get_by_type("computed")), 0)
        chart = self.orch.chart_series(self.orch.groups[1])
        self.assertEqual(chart.labels, ["IA", "IB", "S"])

    def test_digital_results_are_binary(self):
        self.compute("T = TRIP * 3")
        comp = self.orch.recording.computed_channels[0]
        self.assertEqual(comp.made_from, "digital")
        np.testing.assert_allclose(self.orch.recording.computed_values["T"], [0.0, 0.0, 1.0, 1.0])

    def test_results_apply_in_start_order(self):
        rids = [self.orch.submit_computed(f"C{k} = VA + {k}") for k in range(3)]
        handled = self.orch.wait(timeout=10)
        self.assertEqual(handled, rids)
        self.assertEqual([c.name for c in self.orch.recording.computed_channels], ["C0", "C1", "C2"])

    def test_same_name_replaces(self):
        self.compute("P = IA * 2")
        self.compute("P = IA * 3")
        self.assertEqual([c.name for c in self.orch.recording.computed_channels], ["P"])
        np.testing.assert_allclose(self.orch.recording.computed_values["P"], [30.0, 60.0, 90.0, 120.0])

    def test_failures_become_descriptors(self):
        with self.assertLogs("comtrade_MultiFileAnalyzer.core.orchestrator", level="ERROR"):
            desc = self.orch.submit_computed("P = IA +")
        self.assertEqual(desc.kind, ErrorKind.VALIDATION_FAILURE)
        with self.assertLogs("comtrade_MultiFileAnalyzer.core.orchestrator", level="ERROR"):
            self.compute("Q = ZZ + 1")
        self.assertEqual(self.orch.errors[-1].kind, ErrorKind.WORKER_FAILURE)
        self.assertIn("ZZ", self.orch.errors[-1].message)
        self.assertEqual(self.orch.recording.computed_channels, [])
        self.assertFalse(self.orch.terminate("eval_missing"))

    def test_submit_without_recording(self):
        orch = Orchestrator()
        try:
            with self.assertLogs("comtrade_MultiFileAnalyzer.core.orchestrator", level="WARNING"):
                desc = orch.submit_computed("P = a0")
            self.assertEqual(desc.kind, ErrorKind.RESOURCE_MISSING)
        finally:
            orch.close()

    def test_reload_re_evaluates_computed(self):
        self.compute("P = IA * 2", unit="A")
        self.orch.load_file_sets([_file_set()])
        self.orch.wait(timeout=10)
        self.assertEqual([c.name for c in self.orch.recording.computed_channels], ["P"])
        self.assertEqual(self.orch.recording.computed_channels[0].group, "G2")
        self.assertEqual([c.user_group_id for c in self.orch.charts.get_by_type("computed")], ["G2"])

    def test_reload_drops_channels_with_missing_inputs(self):
        self.compute("P = IA * 2")
        with self.assertLogs("comtrade_MultiFileAnalyzer.core.orchestrator", level="WARNING"):
            self.orch.load_file_sets([_file_set(with_ia=False)])
        self.orch.wait(timeout=10)
        self.assertEqual(self.orch.recording.computed_channels, [])


class EnvelopeTests(OrchestratorTestCase):
    def test_field_edits_reach_chart_series(self):
        self.envelope("callback_color", channelID="IA", newValue="#abcdef")
        self.envelope("callback_invert", channelID="IA", newValue=True)
        self.envelope("callback_scale", row={"type": "Analog", "originalIndex": 1}, newValue="2")
        self.envelope("callback_update", channelID="IB", field="name", newValue="IB2")
        chart = self.orch.chart_series(self.orch.groups[1])
        self.assertEqual(chart.colors[0], "#abcdef")
        self.assertEqual(chart.labels, ["IA", "IB2"])
        self.assertEqual(chart.axes_scales[1], 2.0)
        np.testing.assert_allclose(chart.series[0], [-10.0, -20.0, -30.0, -40.0])
        self.assertEqual(self.orch.channel_state.get("analog.axesScales.2"), 2.0)

    def test_edits_can_be_undone(self):
        self.envelope("callback_color", channelID="VA", newValue="#000000")
        self.assertTrue(self.orch.channel_state.undo_last())
        self.assertIsNone(self.orch.channel_state.get("analog.lineColors.0"))

    def test_add_ack_and_delete(self):
        reply = self.envelope("callback_addChannel", equation="S = IA + IB", unit="A", tempClientId="tmp1")
        self.assertEqual(reply["tempClientId"], "tmp1")
        self.orch.wait(reply["request"], timeout=10)
        ack = self.envelope("ack_addChannel", tempClientId="tmp1", channelID="S", assignedIndex=0)
        self.assertEqual(ack, {"request": reply["request"], "channelID": "S", "assignedIndex": 0})

        self.envelope("callback_update", channelID="S", field="unit", newValue="kA")
        self.assertEqual(self.orch.recording.computed_channels[0].unit, "kA")

        self.assertEqual(self.envelope("callback_delete", channelID="S"), {"deleted": "S"})
        self.assertEqual(self.orch.recording.computed_channels, [])
        self.assertEqual(self.orch.charts.get_by_type("computed"), [])
        self.assertEqual(self.orch.channel_state.get("computed.channelIDs"), [])

    def test_bad_envelopes_never_raise(self):
        with self.assertLogs("comtrade_MultiFileAnalyzer.core.orchestrator", level="ERROR"):
            missing = self.envelope("callback_color", channelID="nope", newValue="#fff")
            analog_delete = self.envelope("callback_delete", channelID="VA")
            unknown = self.orch.handle_envelope({"type": "callback_explode"})
            stale_ack = self.envelope("ack_addChannel", tempClientId="never")
        for desc in (missing, analog_delete, unknown, stale_ack):
            self.assertEqual(desc.kind, ErrorKind.INVALID_INPUT)

    def test_resync(self):
        self.compute("P = IA * 2")
        self.orch.channel_state.set("computed.yLabels", [])
        self.assertEqual(self.envelope("computedChannelEvaluated"), {"synced": 1})
        self.assertEqual(self.orch.channel_state.get("computed.yLabels"), ["P"])


class CursorDeltaTests(OrchestratorTestCase):
    def test_sections_per_group(self):
        self.compute("P = IA * 2", unit="A")
        sections = self.orch.cursor_deltas([0.0, 0.02])
        self.assertEqual([s["group_id"] for s in sections], ["G0", "G1", "G2"])
        va = sections[0]["series"][0]
        self.assertEqual((va["v1"], va["v2"], va["deltaY"]), (1.0, 3.0, 2.0))
        self.assertEqual([r["name"] for r in sections[1]["series"]], ["IA", "IB"])
        self.assertEqual(sections[2]["series"][0]["deltaY"], 40.0)

    def test_table(self):
        table = self.orch.delta_table([0.0, 0.021])
        self.assertEqual(table[0]["channel"], TIME_ROW)
        self.assertEqual((table[0]["v0"], table[0]["v1"]), (0.0, 0.02))
        ia = next(r for r in table if r["channel"] == "IA")
        self.assertEqual(ia["percentage0"], 200.0)

    def test_without_recording(self):
        orch = Orchestrator()
        try:
            with self.assertLogs("comtrade_MultiFileAnalyzer.core.orchestrator", level="WARNING"):
                desc = orch.cursor_deltas([0.0])
            self.assertEqual(desc.kind, ErrorKind.RESOURCE_MISSING)
        finally:
            orch.close()


if __name__ == "__main__":
    unittest.main()
