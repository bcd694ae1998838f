import numpy as np

from peb import PEB, simulate_block_sources

NOISE_VAR = 1.0
LAMBDA_BAND = (1.0 / 3.0, 3.0)  # estimated / true noise variance
PRUNING_RATIO = 10.0


def test_update_recovers_noise_power_and_prunes_silent_blocks():
    H, Delta, blocks, X_true, Y = simulate_block_sources(
        Ny=10, Nx=20, Ng=4, Nt=1000, active=(0,), source_var=1.0,
        noise_var=NOISE_VAR, seed=2024,
    )
    peb = PEB(H, Delta, blocks)
    options = {
        "max_iter": 200,
        "max_tol": 1e-6,
        "buffer_size": 500,
        "gamma_min": 1e-3,
        "verbose": False,
    }

    X, lam, gamma_F, gamma, logE = peb.update(Y, options=options)

    assert X.shape == X_true.shape
    assert np.isfinite(logE)
    assert LAMBDA_BAND[0] * NOISE_VAR <= lam <= LAMBDA_BAND[1] * NOISE_VAR

    active, silent = gamma[0], gamma[1:]
    assert np.all(silent >= 0)
    assert PRUNING_RATIO * silent.max() <= active

    # pruning improved on the homogeneous fit
    history = peb.history_
    n_global = history.count("global")
    assert history.logE[-1] >= history.logE[n_global - 1] - 1e-6


def test_estimate_correlates_with_true_sources_in_active_block():
    H, Delta, blocks, X_true, Y = simulate_block_sources(
        Ny=10, Nx=20, Ng=4, Nt=400, active=(0,), noise_var=0.1, seed=7,
    )
    options = {"verbose": False, "buffer_size": 500, "max_iter": 200,
               "max_tol": 1e-6, "gamma_min": 1e-3}
    peb = PEB(H, Delta, blocks, options=options)
    X, *_ = peb.update(Y)

    idx = np.flatnonzero(blocks[:, 0])
    rest = np.flatnonzero(~blocks[:, 0])
    corr = np.corrcoef(X[idx].ravel(), X_true[idx].ravel())[0, 1]
    assert corr > 0.5
    assert np.linalg.norm(X[rest]) < np.linalg.norm(X[idx])
