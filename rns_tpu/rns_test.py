import jax
import polymul_errors as errors
import rns
import polymul_util as util
from polynomial import Polynomial
from absl.testing import absltest
from absl.testing import parameterized
jax.config.update("jax_enable_x64", True)
import numpy as np


class RNSBaseSetTest(parameterized.TestCase):

  def test_build_small_base(self):
    base_set = rns.RNSBaseSet.build([5, 7])
    self.assertEqual(base_set.product, 35)
    self.assertEqual(base_set.q_hat, (7, 5))
    # 7 * 3 = 21 = 1 mod 5, 5 * 3 = 15 = 1 mod 7
    self.assertEqual(base_set.q_hat_inv, (3, 3))
    self.assertEqual(base_set.size, 2)

  def test_build_rejects_common_factor(self):
    with self.assertRaises(errors.ModulusNotCoprime):
      rns.RNSBaseSet.build([6, 9])

  @parameterized.named_parameters(
      ("empty", []),
      ("too_small", [1, 7]),
      ("too_wide", [2**31 + 11]),
  )
  def test_build_rejects_bad_moduli(self, moduli):
    with self.assertRaises(ValueError):
      rns.RNSBaseSet.build(moduli)

  def test_generate_ntt_friendly(self):
    base_set = rns.RNSBaseSet.generate(3, bit_width=30, ring_degree=1024)
    for m in base_set.moduli:
      self.assertTrue(util.is_ntt_friendly(m, 1024))
      self.assertLess(m, 2**30)

  @parameterized.named_parameters(
      ("small", 1000),
      ("wide", 2**200),
  )
  def test_for_bound_covers_signed_range(self, bound):
    base_set = rns.RNSBaseSet.for_bound(bound, signed=True)
    self.assertTrue(base_set.covers(bound, signed=True))
    self.assertGreater(base_set.product, 2 * bound)


class RNSConversionTest(parameterized.TestCase):

  def test_small_base_example(self):
    base_set = rns.RNSBaseSet.build([5, 7])
    representation = rns.to_residues(Polynomial([23], 1), base_set)
    np.testing.assert_array_equal(np.asarray(representation.residues), [[3, 2]])
    restored = rns.from_residues(representation, base_set)
    self.assertEqual(restored.to_list(), [23])

  def test_signed_round_trip(self):
    base_set = rns.RNSBaseSet.build([5, 7])
    poly = Polynomial([-17, 17, 0, -1], 4)
    representation = rns.to_residues(poly, base_set)
    self.assertTrue(representation.signed)
    self.assertEqual(rns.from_residues(representation, base_set).to_list(), [-17, 17, 0, -1])

  def test_wide_round_trip(self):
    q = 2**127 - 1
    base_set = rns.RNSBaseSet.for_bound(q, signed=False)
    coefficients = [q - 1, 0, 2**100 + 7, 12345678901234567890]
    poly = Polynomial(coefficients, 4, q)
    representation = rns.to_residues(poly, base_set, max_workers=2)
    self.assertEqual(representation.num_lanes, base_set.size)
    for i, m in enumerate(base_set.moduli):
      np.testing.assert_array_equal(np.asarray(representation.lane(i)), [c % m for c in coefficients])
    self.assertEqual(rns.from_residues(representation, base_set), poly)

  def test_unreduced_input_is_folded(self):
    base_set = rns.RNSBaseSet.build([5, 7, 11])
    poly = Polynomial([1, 2, 3, 4, 5], 4)
    restored = rns.from_residues(rns.to_residues(poly, base_set), base_set)
    self.assertEqual(restored.to_list(), [-4, 2, 3, 4])

  def test_overflow(self):
    base_set = rns.RNSBaseSet.build([5, 7])
    with self.assertRaises(errors.CoefficientOverflow):
      rns.to_residues(Polynomial([35], 1), base_set)
    with self.assertRaises(errors.CoefficientOverflow):
      rns.to_residues(Polynomial([-18], 1), base_set)
    with self.assertRaises(errors.CoefficientOverflow):
      rns.to_residues(Polynomial([1], 1, 37), base_set)

  def test_lane_count_mismatch(self):
    representation = rns.to_residues(Polynomial([3], 1), rns.RNSBaseSet.build([5, 7]))
    with self.assertRaises(ValueError):
      rns.from_residues(representation, rns.RNSBaseSet.build([5, 7, 11]))


if __name__ == "__main__":
  absltest.main()
