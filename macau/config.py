"""
Typed configuration objects for the Bayesian matrix-factorization sampler.

## Public API:

- `CoreConfig`     : latent size, sample counts, noise precision, threads
- `SideInfoConfig` : side-information regression (Macau prior) settings
- `MacauConfig`    : a simple container grouping the above

## Typical usage:

```python
from macau.config import MacauConfig, CoreConfig, SideInfoConfig
from macau.session import Macau

cfg = MacauConfig(
    core=CoreConfig(
        num_latent=10,
        burnin=50,
        nsamples=200,
        alpha=2.0,
        random_state=42,
        n_workers=4,
    ),
    rows=None,                          # users: plain Normal-Wishart prior
    cols=SideInfoConfig(
        lambda_beta=5.0,
        precompute_gram=True,
    ),
)

model = Macau(cfg)
```
"""

from dataclasses import dataclass, field


@dataclass
class CoreConfig:
    """Configuration for the Gibbs sampler."""
    num_latent: int = 10
    burnin: int = 50
    nsamples: int = 200
    alpha: float = 2.0                 # observation noise precision
    random_state: int | None = 42
    n_workers: int = 1                 # threads for the per-entity loop
    keep_samples: bool = True          # store post-burn-in (U, V) for predict


@dataclass
class SideInfoConfig:
    """Configuration for the side-information (Macau) prior of one side."""
    lambda_beta: float = 5.0           # ridge penalty on beta
    precompute_gram: bool = True       # cache F^T F, else solve with CG
    cg_tol: float = 1e-6
    cg_maxiter: int | None = None


@dataclass
class MacauConfig:
    """Top-level configuration; a side without SideInfoConfig uses the plain prior."""
    core: CoreConfig = field(default_factory=CoreConfig)
    rows: SideInfoConfig | None = None
    cols: SideInfoConfig | None = None
