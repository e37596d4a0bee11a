"""
Algorithm dispatcher: one entry point for negacyclic multiplication.

    multiply(a, b, strategy="auto", backend=None)

routes the product to one of three interchangeable strategies that return the
same polynomial:

    DIRECT             schoolbook convolution, O(n^2), always available
    NTT                three-step matrix NTT, needs prime q = 1 mod 2n
    MATRIX_CONVERSION  RNS + digit decomposition + tiled MAC backend
"""
import enum

import numpy as np
from absl import logging

import matrix_conversion
import ntt_engine
import polymul_errors as errors
from polynomial import Polynomial

DEFAULT_PARAMETERS = {
    # Ring degree above which a configured MAC backend is used
    "matrix_threshold": 64,
    "policy": "performance",
}

AUTO = "auto"


class Strategy(enum.Enum):
    DIRECT = "direct"
    NTT = "ntt"
    MATRIX_CONVERSION = "matrix_conversion"


class Policy(enum.Enum):
    PERFORMANCE = "performance"
    # Always multiply with the schoolbook method, e.g. to cross-check backends
    REFERENCE = "reference"


def direct_multiply(a: Polynomial, b: Polynomial) -> Polynomial:
    """Schoolbook product over Z, then fold with x^n = -1 and reduce mod q."""
    a.check_compatible(b)
    n = a.ring_degree
    lhs = a.reduce_mod_ring().reduce_mod_q().coefficients
    rhs = b.reduce_mod_ring().reduce_mod_q().coefficients
    full = np.zeros(2 * n - 1, dtype=object)
    for i, coefficient in enumerate(lhs):
        if coefficient:
            full[i:i + n] += coefficient * rhs
    return Polynomial(full, n, a.modulus).reduce_mod_ring().reduce_mod_q()


class Dispatcher():
    """Selects and runs a multiplication strategy per request.

    Args:
        backend: Optional MAC backend for MATRIX_CONVERSION.
        parameters: matrix_threshold (ring degree above which a configured
            backend is preferred), policy ("performance" or "reference") and
            any MatrixConverter parameter.
    """
    def __init__(self, backend=None, parameters: dict = None):
        params = dict(DEFAULT_PARAMETERS)
        params.update(parameters or {})
        self.backend = backend
        self.matrix_threshold = params.get("matrix_threshold")
        self.policy = Policy(params.get("policy"))
        converter_parameters = {key: value for key, value in params.items()
                                if key in matrix_conversion.DEFAULT_PARAMETERS}
        self.converter = matrix_conversion.MatrixConverter(converter_parameters)
        self.strategies = {
            Strategy.DIRECT: direct_multiply,
            Strategy.NTT: ntt_engine.ntt_multiply,
            Strategy.MATRIX_CONVERSION: self._matrix_multiply,
        }

    def select_strategy(self, a: Polynomial, b: Polynomial) -> Strategy:
        a.check_compatible(b)
        if self.policy is Policy.REFERENCE:
            strategy = Strategy.DIRECT
        elif ntt_engine.ntt_supported(a.modulus, a.ring_degree):
            strategy = Strategy.NTT
        elif self.backend is not None and a.ring_degree > self.matrix_threshold:
            strategy = Strategy.MATRIX_CONVERSION
        else:
            strategy = Strategy.DIRECT
        logging.debug("Selected %s for n=%d, q=%s", strategy.value, a.ring_degree, a.modulus)
        return strategy

    def multiply(self, a: Polynomial, b: Polynomial, strategy=AUTO) -> Polynomial:
        """a * b mod (x^n + 1), reduced mod q when q is set.

        Args:
            strategy: "auto", a Strategy or its value. An explicit strategy that
                cannot handle the operands raises its own error.

        Raises:
            DegreeMismatch, ModulusMismatch: If a and b live in different rings.
            NTTUnsupportedModulus: If NTT is requested for an unsuitable q.
            BackendError: If the MAC backend fails.
        """
        a.check_compatible(b)
        if strategy == AUTO:
            strategy = self.select_strategy(a, b)
        else:
            strategy = Strategy(strategy)
        return self.strategies[strategy](a, b)

    def _matrix_multiply(self, a: Polynomial, b: Polynomial) -> Polynomial:
        return self.converter.multiply_via_matrix(a, b, self.backend)


def multiply(a: Polynomial, b: Polynomial, strategy=AUTO, backend=None) -> Polynomial:
    return Dispatcher(backend).multiply(a, b, strategy)
