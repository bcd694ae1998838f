import numpy as np


def equal_blocks(Nx, Ng):
    """Boolean (Nx x Ng) mask splitting ``Nx`` sources into ``Ng`` contiguous blocks."""
    if not (1 <= Ng <= Nx):
        raise ValueError(f"Ng must be between 1 and Nx={Nx}, got {Ng}")
    labels = np.arange(Nx) * Ng // Nx
    return labels[:, None] == np.arange(Ng)[None, :]


def simulate_block_sources(
    Ny=10,
    Nx=20,
    Ng=4,
    Nt=500,
    active=(0,),
    source_var=1.0,
    noise_var=0.25,
    seed=0,
):
    """
    Random forward model with identity prior precision and equal blocks.

    Sources in the ``active`` blocks are i.i.d. with variance ``source_var``;
    all other sources are zero. Noise is white with variance ``noise_var``.

    Returns
    -------
    H, Delta, blocks, X, Y
    """
    rng = np.random.default_rng(seed)
    H = rng.standard_normal((Ny, Nx))
    Delta = np.eye(Nx)
    blocks = equal_blocks(Nx, Ng)

    X = np.zeros((Nx, Nt))
    for k in active:
        idx = np.flatnonzero(blocks[:, k])
        X[idx] = np.sqrt(source_var) * rng.standard_normal((idx.size, Nt))

    Y = H @ X + np.sqrt(noise_var) * rng.standard_normal((Ny, Nt))
    return H, Delta, blocks, X, Y
