"""Exceptions raised by the sampler and its priors."""


class NumericalDegeneracy(RuntimeError):
    """A precision matrix that must be SPD failed its Cholesky factorization.

    Raised for per-row posterior precisions, the ridge system of the
    side-information regression and matrices handed to multivariate normal
    draws. It is fatal for the whole sampling run: retrying with the same
    inputs reproduces the same failure.
    """


class UnimplementedConfiguration(NotImplementedError):
    """The requested prior configuration is not supported."""
