import unittest

import numpy as np

from sortformer_coreml.errors import InferenceFailed
from sortformer_coreml.inference import (
    MainModelOutput,
    as_float32,
    as_int_scalars,
    decode_main_output,
    first_decoded,
    run_main_model,
    upcast_to_float32,
)


def _outputs(embs_dtype=np.float32, suffix="_out"):
    return {
        "speaker_preds": np.arange(12, dtype=np.float32).reshape(1, 3, 4),
        f"chunk_pre_encoder_lengths{suffix}": np.array([2], dtype=np.int32),
        f"chunk_pre_encoder_embs{suffix}": np.array([[[0.5, -1.25], [3.0, 0.125]]], dtype=embs_dtype),
    }


class StaticEngine:
    def __init__(self, outputs):
        self.outputs = outputs
        self.calls = []

    def predict(self, inputs):
        self.calls.append(inputs)
        return self.outputs


class FailingEngine:
    def predict(self, inputs):
        raise RuntimeError("ANE compile error")


class TestDecoders(unittest.TestCase):

    def test_first_decoded_order(self):
        value = np.ones(3, dtype=np.float32)
        calls = []

        def reject(v):
            calls.append("reject")
            return None

        def accept(v):
            calls.append("accept")
            return np.asarray(v)

        def never(v):
            calls.append("never")
            return None

        self.assertIsNotNone(first_decoded(value, (reject, accept, never)))
        self.assertEqual(calls, ["reject", "accept"])

    def test_first_decoded_none_value(self):
        self.assertIsNone(first_decoded(None, (upcast_to_float32,)))

    def test_as_float32_only_accepts_fp32(self):
        self.assertIsNotNone(as_float32(np.zeros(2, dtype=np.float32)))
        self.assertIsNone(as_float32(np.zeros(2, dtype=np.float16)))

    def test_decoders_return_owned_arrays(self):
        floats = np.ones((1, 2, 2), dtype=np.float32)
        ints = np.array([4], dtype=np.int32)
        self.assertFalse(np.shares_memory(as_float32(floats), floats))
        self.assertFalse(np.shares_memory(upcast_to_float32(floats.astype(np.float16)), floats))
        self.assertFalse(np.shares_memory(as_int_scalars(ints), ints))

    def test_upcast(self):
        out = upcast_to_float32(np.array([1.5, 2.25], dtype=np.float16))
        self.assertEqual(out.dtype, np.float32)
        np.testing.assert_array_equal(out, [1.5, 2.25])
        self.assertIsNone(upcast_to_float32(np.array([1], dtype=np.int32)))

    def test_int_scalars(self):
        np.testing.assert_array_equal(as_int_scalars(np.array([[7]], dtype=np.int64)), [7])
        self.assertIsNone(as_int_scalars(np.array([], dtype=np.int32)))
        self.assertIsNone(as_int_scalars(np.array([7.0], dtype=np.float32)))


class TestDecodeMainOutput(unittest.TestCase):

    def test_decode_fp32(self):
        out = decode_main_output(_outputs())
        self.assertIsInstance(out, MainModelOutput)
        self.assertEqual(out.chunk_length, 2)
        self.assertEqual(out.predictions.shape, (12,))
        self.assertEqual(out.predictions.dtype, np.float32)
        self.assertEqual(out.chunk_embeddings.dtype, np.float32)
        np.testing.assert_array_equal(out.predictions_matrix(4)[2], [8, 9, 10, 11])
        np.testing.assert_array_equal(out.chunk_embeddings_matrix(2)[1], [3.0, 0.125])

    def test_precision_transparency(self):
        wide = decode_main_output(_outputs(np.float32))
        narrow = decode_main_output(_outputs(np.float16))
        self.assertEqual(narrow.chunk_embeddings.dtype, np.float32)
        self.assertEqual(len(wide.chunk_embeddings), len(narrow.chunk_embeddings))
        np.testing.assert_allclose(wide.chunk_embeddings, narrow.chunk_embeddings, rtol=1e-3)

    def test_legacy_output_names(self):
        out = decode_main_output(_outputs(suffix=""))
        self.assertEqual(out.chunk_length, 2)
        self.assertEqual(out.chunk_embeddings.size, 4)

    def test_missing_predictions(self):
        outputs = _outputs()
        del outputs["speaker_preds"]
        with self.assertRaisesRegex(InferenceFailed, "missing required output"):
            decode_main_output(outputs)

    def test_predictions_wrong_dtype_is_missing(self):
        outputs = _outputs()
        outputs["speaker_preds"] = outputs["speaker_preds"].astype(np.float16)
        with self.assertRaisesRegex(InferenceFailed, "missing required output"):
            decode_main_output(outputs)

    def test_missing_lengths(self):
        outputs = _outputs()
        del outputs["chunk_pre_encoder_lengths_out"]
        with self.assertRaisesRegex(InferenceFailed, "missing required output"):
            decode_main_output(outputs)

    def test_missing_embeddings(self):
        outputs = _outputs()
        del outputs["chunk_pre_encoder_embs_out"]
        with self.assertRaisesRegex(InferenceFailed, "missing chunk embeddings"):
            decode_main_output(outputs)

    def test_non_float_embeddings_are_missing(self):
        outputs = _outputs()
        outputs["chunk_pre_encoder_embs_out"] = np.zeros((1, 2, 2), dtype=np.int32)
        with self.assertRaisesRegex(InferenceFailed, "missing chunk embeddings"):
            decode_main_output(outputs)


class TestRunMainModel(unittest.TestCase):

    def test_single_invocation(self):
        engine = StaticEngine(_outputs())
        inputs = {"chunk": np.zeros((1, 2, 2), dtype=np.float32)}
        out = run_main_model(engine, inputs)
        self.assertEqual(len(engine.calls), 1)
        self.assertIs(engine.calls[0], inputs)
        self.assertEqual(out.chunk_length, 2)

    def test_engine_error_wrapped(self):
        with self.assertRaises(InferenceFailed) as ctx:
            run_main_model(FailingEngine(), {})
        self.assertIn("ANE compile error", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)

    def test_engine_returns_none(self):
        with self.assertRaises(InferenceFailed):
            run_main_model(StaticEngine(None), {})


if __name__ == "__main__":
    unittest.main()
