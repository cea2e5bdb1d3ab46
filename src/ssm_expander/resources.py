"""
resources.py
============
Priors, diffusion block and starting point handed to the SSM stage.

- ``prior_store()``    — one JSON-serialisable descriptor per input with a
  prior, *including* ``dirac`` (fixed-value) priors.
- ``extract_priors()`` — the estimated priors only (``dirac`` omitted).
- ``make_sde()``       — drift / dispersion block for inputs following a
  diffusion.
- ``initial_theta()`` / ``default_covmat()`` — one draw from the priors,
  overridden by declared values, and its default proposal covariance.
"""

import numpy as np

from ssm_expander.errors import ModelSpecificationError


def prior_descriptor(prior):
    """Return ``{'dist': ..., <params>}`` for a :class:`~ssm_expander.model.Prior`."""
    descriptor = {'dist': prior.dist}
    descriptor.update(prior.params)
    return descriptor


def prior_store(inputs):
    """Map every input declaring a prior to its descriptor."""
    return {
        inp.name: prior_descriptor(inp.scalar_prior)
        for inp in inputs
        if inp.prior is not None
    }


def extract_priors(inputs):
    """List the estimated priors as ``{'name', 'dist', <params>}`` entries."""
    priors = []
    for inp in inputs:
        prior = inp.scalar_prior
        if prior is None or prior.is_dirac:
            continue
        entry = {'name': inp.name}
        entry.update(prior_descriptor(prior))
        priors.append(entry)
    return priors


def make_sde(inputs):
    """Build the SSM ``sde`` block, or None when no input has a diffusion.

    Drift is zero (random walk); a ``log`` transformation makes it a walk on
    ``log(input)``.  The dispersion matrix is diagonal with the volatilities.
    """
    diffusing = [inp for inp in inputs if inp.sde is not None]
    if not diffusing:
        return None

    drift = []
    for inp in diffusing:
        entry = {'name': inp.name, 'f': 0}
        if inp.sde.transformation == "log":
            entry['transformation'] = f"log({inp.name})"
        drift.append(entry)

    n = len(diffusing)
    dispersion = [
        [diffusing[i].sde.volatility if i == j else 0 for j in range(n)]
        for i in range(n)
    ]
    return {'drift': drift, 'dispersion': dispersion}


# ======================================================================
# Starting point
# ======================================================================

_MAX_REJECTIONS = 10000


def sample_prior(entry, rng):
    """Draw one value from a prior entry (as returned by ``extract_priors``)."""
    dist = entry['dist']
    if dist == "unif":
        return float(rng.uniform(entry['min'], entry['max']))
    if dist == "normal":
        return float(rng.normal(entry['mean'], entry['sd']))
    if dist == "truncnorm":
        lower = entry.get('a', -np.inf)
        upper = entry.get('b', np.inf)
        for _ in range(_MAX_REJECTIONS):
            x = rng.normal(entry['mean'], entry['sd'])
            if lower <= x <= upper:
                return float(x)
        raise ModelSpecificationError(
            f"Could not sample the truncnorm prior of {entry.get('name')!r} "
            f"within [{lower}, {upper}]"
        )
    raise ModelSpecificationError(f"Unknown prior distribution {dist!r}")


def initial_theta(priors, inputs, rng=None):
    """One parameter vector: a prior draw, overridden by declared values.

    Parameters
    ----------
    priors : list of dict
        Output of :func:`extract_priors`.
    inputs : list of Input
    rng : numpy.random.Generator or int, optional

    Returns
    -------
    dict
        Parameter name → float, in the order of ``priors``.
    """
    rng = np.random.default_rng(rng)
    theta = {entry['name']: sample_prior(entry, rng) for entry in priors}
    for inp in inputs:
        if inp.name in theta and inp.value is not None:
            theta[inp.name] = float(inp.scalar_value)
    return theta


def default_covmat(theta):
    """Diagonal covariance with ``theta / 10`` on the diagonal."""
    return np.diag(np.array(list(theta.values()), dtype=float) / 10)
