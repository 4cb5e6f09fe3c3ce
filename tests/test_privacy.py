"""Tests for octomil_secagg.privacy (clipping, Gaussian noise, quantization)."""

import math
import unittest
from unittest.mock import MagicMock

import numpy as np

from octomil_secagg.errors import InvalidConfigurationError
from octomil_secagg.privacy import (
    _box_muller,
    add_gaussian_noise,
    clip_gradients,
    dequantize,
    noise_stddev,
    quantization_error_bound,
    quantize,
)
from octomil_secagg.weights import l2_norm


def _wm(**tensors):
    return {k: np.array(v, dtype=np.float32) for k, v in tensors.items()}


# ---------------------------------------------------------------------------
# Gradient clipping
# ---------------------------------------------------------------------------


class ClipGradientsTests(unittest.TestCase):
    def test_within_norm_returns_same_object(self):
        delta = _wm(w=[0.3, 0.4])
        self.assertIs(clip_gradients(delta, 1.0), delta)

    def test_exactly_at_norm_is_noop(self):
        delta = _wm(w=[3.0, 4.0])
        self.assertIs(clip_gradients(delta, 5.0), delta)

    def test_clips_to_max_norm(self):
        delta = _wm(w=[3.0, 4.0])
        clipped = clip_gradients(delta, 2.5)
        np.testing.assert_allclose(clipped["w"], [1.5, 2.0], rtol=1e-6)
        self.assertAlmostEqual(l2_norm(clipped), 2.5, places=5)

    def test_norm_is_global_across_tensors(self):
        delta = _wm(a=[3.0], b=[4.0])
        clipped = clip_gradients(delta, 1.0)
        np.testing.assert_allclose(clipped["a"], [0.6], rtol=1e-6)
        np.testing.assert_allclose(clipped["b"], [0.8], rtol=1e-6)

    def test_direction_preserved(self):
        rng = np.random.default_rng(3)
        delta = _wm(a=rng.normal(size=50), b=rng.normal(size=20) * 10)
        clipped = clip_gradients(delta, 0.5)
        ratio_before = delta["a"][0] / delta["b"][3]
        ratio_after = clipped["a"][0] / clipped["b"][3]
        self.assertAlmostEqual(float(ratio_before), float(ratio_after), places=4)
        self.assertAlmostEqual(l2_norm(clipped), 0.5, places=5)

    def test_input_not_mutated(self):
        delta = _wm(w=[3.0, 4.0])
        clip_gradients(delta, 1.0)
        np.testing.assert_array_equal(delta["w"], [3.0, 4.0])

    def test_empty_delta_never_clipped(self):
        empty = {}
        self.assertIs(clip_gradients(empty, 0.0), empty)
        zero_length = _wm(w=[])
        self.assertIs(clip_gradients(zero_length, 0.0), zero_length)

    def test_negative_max_norm_rejected(self):
        with self.assertRaises(InvalidConfigurationError):
            clip_gradients(_wm(w=[1.0]), -1.0)


# ---------------------------------------------------------------------------
# Gaussian noise
# ---------------------------------------------------------------------------


class NoiseStddevTests(unittest.TestCase):
    def test_gaussian_mechanism_calibration(self):
        expected = 2.0 * math.sqrt(2.0 * math.log(1.25 / 1e-5)) / 0.5
        self.assertAlmostEqual(noise_stddev(0.5, 2.0, 1e-5), expected)

    def test_invalid_parameters(self):
        for args in [(0.0, 1.0, 1e-5), (-1.0, 1.0, 1e-5), (1.0, 1.0, 0.0), (1.0, -0.1, 1e-5)]:
            with self.subTest(args=args):
                with self.assertRaises(InvalidConfigurationError):
                    noise_stddev(*args)


class GaussianNoiseTests(unittest.TestCase):
    def test_shape_preserved(self):
        delta = _wm(a=np.zeros(7), b=np.zeros(3))
        noisy = add_gaussian_noise(delta, 1.0, 1.0, 1e-5)
        self.assertEqual(set(noisy), {"a", "b"})
        self.assertEqual(noisy["a"].shape, (7,))
        self.assertEqual(noisy["b"].shape, (3,))
        self.assertEqual(noisy["a"].dtype, np.float32)

    def test_every_element_changes(self):
        delta = _wm(w=np.linspace(-1, 1, 100))
        noisy = add_gaussian_noise(delta, 1.0, 1.0, 1e-5)
        self.assertTrue(np.all(noisy["w"] != delta["w"]))

    def test_repeated_calls_differ(self):
        delta = _wm(w=np.zeros(16))
        first = add_gaussian_noise(delta, 1.0, 1.0, 1e-5)
        second = add_gaussian_noise(delta, 1.0, 1.0, 1e-5)
        self.assertFalse(np.array_equal(first["w"], second["w"]))

    def test_injected_generator_is_reproducible(self):
        delta = _wm(w=np.arange(10))
        first = add_gaussian_noise(delta, 1.0, 1.0, 1e-5, rng=np.random.default_rng(7))
        second = add_gaussian_noise(delta, 1.0, 1.0, 1e-5, rng=np.random.default_rng(7))
        np.testing.assert_array_equal(first["w"], second["w"])

    def test_zero_sensitivity_adds_nothing(self):
        delta = _wm(w=[1.0, -2.0, 3.5])
        noisy = add_gaussian_noise(delta, 1.0, 0.0, 1e-5)
        np.testing.assert_array_equal(noisy["w"], delta["w"])

    def test_input_not_mutated(self):
        delta = _wm(w=[1.0, 2.0])
        add_gaussian_noise(delta, 1.0, 1.0, 1e-5)
        np.testing.assert_array_equal(delta["w"], [1.0, 2.0])

    def test_invalid_budget_fails_before_drawing(self):
        rng = MagicMock()
        with self.assertRaises(InvalidConfigurationError):
            add_gaussian_noise(_wm(w=[1.0]), 0.0, 1.0, 1e-5, rng=rng)
        rng.random.assert_not_called()

    def test_noise_scale_matches_sigma(self):
        delta = _wm(w=np.zeros(20000))
        sigma = noise_stddev(2.0, 1.0, 1e-3)
        noisy = add_gaussian_noise(delta, 2.0, 1.0, 1e-3, rng=np.random.default_rng(0))
        self.assertAlmostEqual(float(np.std(noisy["w"])) / sigma, 1.0, delta=0.05)
        self.assertAlmostEqual(float(np.mean(noisy["w"])) / sigma, 0.0, delta=0.05)


class _ScriptedRng:
    """Generator stand-in that replays fixed uniform draws."""

    def __init__(self, draws):
        self._draws = list(draws)

    def random(self, size):
        out = np.array(self._draws[:size], dtype=np.float64)
        self._draws = self._draws[size:]
        return out


class BoxMullerTests(unittest.TestCase):
    def test_zero_first_draw_is_rejected(self):
        # u1 = [0.0, 0.5] -> redraw one -> [0.25, 0.5]; u2 = [0.0, 0.25]
        rng = _ScriptedRng([0.0, 0.5, 0.25, 0.0, 0.25])
        samples = _box_muller(rng, 2)
        self.assertTrue(np.all(np.isfinite(samples)))
        self.assertAlmostEqual(samples[0], math.sqrt(-2.0 * math.log(0.25)))
        self.assertAlmostEqual(samples[1], 0.0, places=12)

    def test_standard_normal_moments(self):
        samples = _box_muller(np.random.default_rng(1), 50000)
        self.assertAlmostEqual(float(np.mean(samples)), 0.0, delta=0.03)
        self.assertAlmostEqual(float(np.std(samples)), 1.0, delta=0.03)


# ---------------------------------------------------------------------------
# Quantization
# ---------------------------------------------------------------------------


class QuantizeTests(unittest.TestCase):
    def test_roundtrip_within_scale(self):
        rng = np.random.default_rng(11)
        delta = _wm(a=rng.normal(size=500), b=rng.uniform(-0.01, 0.01, size=64))
        for bits in (8, 16):
            with self.subTest(bits=bits):
                q = quantize(delta, bits)
                restored = dequantize(q)
                for key in delta:
                    err = np.abs(restored[key].astype(np.float64) - delta[key].astype(np.float64))
                    self.assertTrue(np.all(err <= q[key].scale), f"{key}: max err {err.max()}")

    def test_symmetric_scale_and_dtype(self):
        delta = _wm(w=[-2.0, 0.5, 1.0])
        q8 = quantize(delta, 8)["w"]
        self.assertEqual(q8.data.dtype, np.int8)
        self.assertEqual(q8.zero_point, 0)
        self.assertAlmostEqual(q8.scale, 2.0 / 127)
        self.assertEqual(int(q8.data[0]), -127)
        q16 = quantize(delta, 16)["w"]
        self.assertEqual(q16.data.dtype, np.int16)
        self.assertAlmostEqual(q16.scale, 2.0 / 32767)
        self.assertEqual(q16.bits, 16)

    def test_all_zero_roundtrips_exactly(self):
        delta = _wm(w=np.zeros(5))
        for bits, dtype in ((8, np.int8), (16, np.int16)):
            with self.subTest(bits=bits):
                q = quantize(delta, bits)
                self.assertEqual(q["w"].scale, 1.0)
                np.testing.assert_array_equal(q["w"].data, np.zeros(5, dtype=dtype))
                self.assertEqual(q["w"].data.dtype, dtype)
                np.testing.assert_array_equal(dequantize(q)["w"], np.zeros(5, dtype=np.float32))

    def test_quantized_tensors_compare_by_identity(self):
        delta = _wm(w=[0.5, -1.0])
        first, second = quantize(delta)["w"], quantize(delta)["w"]
        self.assertTrue(first == first)
        self.assertFalse(first == second)
        self.assertEqual(len({first, second}), 2)

    def test_default_bits_is_8(self):
        self.assertEqual(quantize(_wm(w=[1.0]))["w"].data.dtype, np.int8)

    def test_unsupported_bits(self):
        for bits in (4, 12, 32):
            with self.subTest(bits=bits):
                with self.assertRaises(InvalidConfigurationError):
                    quantize(_wm(w=[1.0]), bits)

    def test_error_bound_reports_scale(self):
        q = quantize(_wm(a=[1.27], b=[0.0]), 8)
        bounds = quantization_error_bound(q)
        self.assertAlmostEqual(bounds["a"], 0.01, places=6)
        self.assertEqual(bounds["b"], 1.0)


if __name__ == "__main__":
    unittest.main()
