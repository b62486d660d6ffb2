import unittest

import numpy as np

from comtrade_MultiFileAnalyzer.computed import results
from comtrade_MultiFileAnalyzer.computed.expression import (compile_expression, convert_latex, process_equation,
                                                            validate_channel_name)
from comtrade_MultiFileAnalyzer.computed.prepare import (DetachedBufferError, TransferBuffer, build_worker_task,
                                                         extract_used_channels, validate_recording)
from comtrade_MultiFileAnalyzer.computed.worker import (CompleteMessage, ErrorMessage, EvaluationWorker,
                                                        ProgressMessage, WorkerHost)
from comtrade_MultiFileAnalyzer.core.errors import ResourceMissing, ValidationFailure
from comtrade_MultiFileAnalyzer.core.model import ChannelDescriptor, Recording


def _recording(n=5):
    t = np.arange(n, dtype=float) * 0.001
    ia = np.array([3.0, 0.0, -3.0, 1.0, 2.0])[:n]
    ib = np.array([4.0, 1.0, 4.0, 0.0, 2.0])[:n]
    ic = np.array([0.0, 0.0, 0.0, 0.0, 1.0])[:n]
    digital = [np.array(v, dtype=float)[:n] for v in ([0, 1, 1, 0, 1], [0, 1, 0, 0, 1], [0, 1, 0, 1, 1])]
    return Recording(
        analog_channels=[ChannelDescriptor(channel_id=c, name=c, unit="A") for c in ("IA", "IB", "IC")],
        digital_channels=[ChannelDescriptor(channel_id=c, name=c) for c in ("TRIP", "CB", "AR")],
        time=t,
        analog_data=[ia, ib, ic],
        digital_data=digital,
    )


def _long_recording(n):
    return Recording(
        analog_channels=[ChannelDescriptor(channel_id="IA", name="IA", unit="A")],
        digital_channels=[],
        time=np.arange(n, dtype=float),
        analog_data=[np.linspace(0.0, 1.0, n)],
        digital_data=[],
    )


def _run(task):
    messages = []
    worker = EvaluationWorker(task, post=messages.append)
    worker.run()
    return worker, messages


class ExpressionTests(unittest.TestCase):
    def test_named_equation(self):
        res = process_equation("I_RMS = sqrt(IA^2 + IB^2 + IC^2)")
        self.assertTrue(res.valid)
        self.assertEqual(res.name, "I_RMS")
        self.assertEqual(res.internal, "sqrt(IA^2 + IB^2 + IC^2)")

    def test_unnamed_equation_and_comparison(self):
        res = process_equation("IA >= 2")
        self.assertTrue(res.valid)
        self.assertIsNone(res.name)

    def test_latex_surface(self):
        self.assertEqual(convert_latex(r"\frac{IA}{2}"), "(IA)/(2)")
        self.assertEqual(convert_latex(r"2\pi"), "2*pi")
        self.assertEqual(convert_latex(r"\sqrt{IA^{2}+IB^{2}}"), "sqrt(IA^(2)+IB^(2))")
        self.assertEqual(convert_latex(r"I_{A} \cdot 3"), "IA * 3")
        self.assertEqual(convert_latex("1e-3IA"), "1e-3*IA")
        self.assertEqual(convert_latex(r"\left|IA\right|"), "abs(IA)")
        self.assertEqual(convert_latex("a0 * a1"), "a0 * a1")

    def test_rejects_unsafe_or_unknown(self):
        for text in ("__import__('os')", "IA.real", "foo(IA)", "[IA, IB]", "lambda: 1", "IA +"):
            res = process_equation(text)
            self.assertFalse(res.valid, text)
            self.assertTrue(res.error)
        with self.assertRaises(ValidationFailure):
            compile_expression("")

    def test_channel_names(self):
        self.assertEqual(validate_channel_name("P_total"), (True, None))
        for bad in ("sin", "1abc", "time", "x" * 51, "a-b"):
            ok, why = validate_channel_name(bad)
            self.assertFalse(ok, bad)
            self.assertTrue(why)
        self.assertFalse(process_equation("sqrt = IA").valid)

    def test_builtin_names_are_case_sensitive(self):
        for name in ("I", "E", "PI", "Sin"):
            self.assertEqual(validate_channel_name(name), (True, None), name)
        self.assertFalse(validate_channel_name("pi")[0])
        res = process_equation("PI = IA * 2")
        self.assertTrue(res.valid)
        self.assertEqual(res.name, "PI")


class PrepareTests(unittest.TestCase):
    def test_reference_extraction_drops_builtins(self):
        self.assertEqual(extract_used_channels("sqrt(IA^2 + IB^2 + IC^2)"), {"IA", "IB", "IC"})
        self.assertEqual(extract_used_channels("max(a0, d1) * pi + e"), {"a0", "d1"})
        self.assertEqual(extract_used_channels("2 * 3"), set())

    def test_only_referenced_channels_are_packaged(self):
        rec = _recording()
        task = build_worker_task("a0 + TRIP", rec)
        self.assertEqual([b is not None for b in task.analog_buffers], [True, False, False])
        self.assertEqual([b is not None for b in task.digital_buffers], [True, False, False])
        self.assertEqual(task.sample_count, 5)
        self.assertEqual(task.analog_channels[0], {"id": "IA", "ph": "", "units": "A"})
        self.assertEqual(task.transferred_bytes(), 2 * 5 * 8)
        self.assertEqual(set(task.to_dict()), {"mathJsExpr", "analogBuffers", "digitalBuffers", "analogChannels",
                                               "digitalChannels", "sampleCount", "analogCount", "digitalCount"})

    def test_buffers_are_copies_of_the_recording(self):
        rec = _recording()
        task = build_worker_task("IA", rec)
        task.analog_buffers[0].array[0] = 99.0
        self.assertEqual(rec.analog_data[0][0], 3.0)

    def test_transfer_detaches_sender(self):
        buf = TransferBuffer([1.0, 2.0])
        moved = buf.transfer()
        self.assertTrue(buf.detached)
        self.assertEqual(buf.nbytes, 0)
        with self.assertRaises(DetachedBufferError):
            buf.array
        np.testing.assert_allclose(moved.array, [1.0, 2.0])

    def test_missing_recording(self):
        with self.assertRaises(ResourceMissing):
            validate_recording(None)
        with self.assertRaises(ResourceMissing):
            build_worker_task("IA", Recording([], [], np.zeros(0), [], []))


class WorkerTests(unittest.TestCase):
    def test_rms_expression_end_to_end(self):
        rec = _recording()
        parsed = process_equation("I_RMS = sqrt(IA^2 + IB^2 + IC^2)")
        task = build_worker_task(parsed.internal, rec)
        self.assertEqual(len(task.transferables()), 3)

        moved = task.detach()
        # every host-side handle is unreadable once posted
        self.assertTrue(all(b.detached for b in task.transferables()))
        self.assertEqual(len(moved.transferables()), 3)
        worker, messages = _run(moved)
        done = messages[-1]
        self.assertIsInstance(done, CompleteMessage)
        self.assertTrue(worker.result_handle.detached)
        expected = np.sqrt(rec.analog_data[0] ** 2 + rec.analog_data[1] ** 2 + rec.analog_data[2] ** 2)
        np.testing.assert_allclose(done.results_buffer.array, expected)
        self.assertEqual(done.result_count, 5)

        meta, values = results.build_channel_data("I_RMS = sqrt(IA^2 + IB^2 + IC^2)", parsed.internal,
                                                  done.results_buffer, rec, name=parsed.name, unit="A",
                                                  now_ms=1000)
        self.assertEqual(meta.made_from, "analog")
        self.assertEqual(meta.name, "I_RMS")
        self.assertEqual(meta.sample_count, 5)
        self.assertEqual(meta.group, "G0")

    def test_undefined_symbol(self):
        rec = _recording()
        _, messages = _run(build_worker_task("IA + ZZ", rec))
        self.assertIsInstance(messages[-1], ErrorMessage)
        self.assertEqual(messages[-1].message, "Undefined symbol ZZ")

    def test_division_by_zero_and_domain_errors_give_nan(self):
        rec = _recording()
        _, messages = _run(build_worker_task("1 / 0 + IA", rec))
        self.assertTrue(np.all(np.isnan(messages[-1].results_buffer.array)))
        _, messages = _run(build_worker_task("sqrt(IA)", rec))
        self.assertTrue(np.isnan(messages[-1].results_buffer.array[2]))

    def test_division_by_zero_channel_gives_nan(self):
        rec = _recording()
        # IC is zero everywhere but the last sample
        _, messages = _run(build_worker_task("IA / IC", rec))
        np.testing.assert_allclose(messages[-1].results_buffer.array, [np.nan] * 4 + [2.0])
        _, messages = _run(build_worker_task("IA / 0", rec))
        self.assertTrue(np.all(np.isnan(messages[-1].results_buffer.array)))
        _, messages = _run(build_worker_task("IA / (IB - IB) + 1", rec))
        self.assertTrue(np.all(np.isnan(messages[-1].results_buffer.array)))

    def test_progress_is_reported(self):
        _, messages = _run(build_worker_task("IA * 2", _long_recording(500)))
        progress = [m for m in messages if isinstance(m, ProgressMessage)]
        self.assertTrue(progress)
        self.assertTrue(all(0 < p.percent <= 100 for p in progress))
        self.assertEqual(progress[-1].total, 500)

    def test_host_delivers_on_host_thread(self):
        host = WorkerHost(max_workers=1)
        try:
            done, errors = [], []
            rid = host.start(build_worker_task("IA * 2", _recording()),
                             on_complete=done.append, on_error=errors.append)
            self.assertTrue(rid.startswith("eval_"))
            self.assertEqual(host.wait(rid, timeout=10), "completed")
            self.assertEqual(len(done), 1)
            self.assertEqual(errors, [])
            np.testing.assert_allclose(done[0].results_buffer.array, _recording().analog_data[0] * 2)
            self.assertNotIn(rid, host.active)
            # a finished request no longer pins its worker or the moved inputs
            self.assertIsNone(host.worker(rid))
        finally:
            host.shutdown()

    def test_terminate_reports_error(self):
        host = WorkerHost(max_workers=1)
        try:
            done, errors = [], []
            rid = host.start(build_worker_task("sin(IA) * cos(IA)", _long_recording(200000)),
                             on_complete=done.append, on_error=errors.append)
            self.assertTrue(host.terminate(rid))
            self.assertEqual(host.status(rid), "failed")
            self.assertEqual([e.message for e in errors], ["Worker terminated"])
            self.assertFalse(host.terminate(rid))
            self.assertIsNone(host.worker(rid))
            host.pump(0.05)
            self.assertEqual(done, [])
        finally:
            host.shutdown()


class ResultProcessorTests(unittest.TestCase):
    def setUp(self):
        results.configure_from_config({})

    def test_statistics_ignore_zero_and_non_finite(self):
        stats = results.calculate_statistics(np.array([0.0, 2.0, np.nan, -1.0, np.inf]))
        self.assertEqual((stats.min, stats.max, stats.mean), (-1.0, 2.0, 0.5))
        self.assertEqual((stats.count, stats.valid_count), (5, 2))
        empty = results.calculate_statistics(np.zeros(4))
        self.assertEqual((empty.min, empty.max, empty.mean, empty.valid_count), (0.0, 0.0, 0.0, 0))

    def test_digital_formula_is_coerced(self):
        rec = _recording()
        _, messages = _run(build_worker_task("d0 + d1 + d2", rec))
        raw = messages[-1].results_buffer
        self.assertEqual(float(np.max(raw.array)), 3.0)
        meta, values = results.build_channel_data("d0 + d1 + d2", "d0 + d1 + d2", raw, rec, now_ms=5)
        self.assertEqual(meta.made_from, "digital")
        self.assertEqual(values.tolist(), [0.0, 1.0, 1.0, 1.0, 1.0])
        self.assertEqual(meta.name, "computed_5")
        rec.append_computed(meta, values)

    def test_binary_head_with_non_binary_tail_is_still_coerced(self):
        values = np.array([0.0, 1.0, 1.0, 2.0])
        self.assertTrue(results.are_binary_values(values, limit=3))
        rec = _recording(4)
        meta, out = results.build_channel_data("TRIP", "TRIP", values, rec, now_ms=1)
        self.assertEqual(meta.made_from, "digital")
        self.assertEqual(out.tolist(), [0.0, 1.0, 1.0, 1.0])

    def test_made_from(self):
        rec = _recording()
        self.assertEqual(results.detect_made_from("TRIP && CB", rec), "digital")
        self.assertEqual(results.detect_made_from("IA * TRIP", rec), "analog")
        self.assertEqual(results.detect_made_from("2 * pi", rec), "analog")
        self.assertEqual(results.detect_made_from("d0 || true", rec), "digital")

    def test_naming_colors_and_groups(self):
        self.assertEqual(results.generate_channel_name(None, 1234), "computed_1234")
        self.assertEqual(results.generate_channel_name("  P ", 1), "P")
        self.assertEqual(results.pick_color(9), results.DEFAULT_PALETTE[1])
        self.assertEqual(results.next_free_group(["G0", "G2"], ["G1"]), "G3")
        results.configure_from_config({"computed": {"palette": ["#000"]}})
        self.assertEqual(results.pick_color(4), "#000")

    def test_group_defaults_to_next_free(self):
        rec = _recording()
        meta, _ = results.build_channel_data("IA", "IA", np.ones(5), rec, chart_groups=["G0", "G1"], now_ms=1)
        self.assertEqual(meta.group, "G2")
        self.assertEqual(meta.color, results.DEFAULT_PALETTE[0])
        meta, _ = results.build_channel_data("IA", "IA", np.ones(5), rec, group="G0", now_ms=2)
        self.assertEqual(meta.group, "G0")


if __name__ == "__main__":
    unittest.main()
