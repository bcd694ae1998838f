import logging

import numpy as np
import numpy.linalg as npl
import pytest

from peb.evidence import data_covariance, log_evidence, model_covariance
from peb.model import build_block_model
from peb.sim import equal_blocks

RTOL = 1e-8
ATOL = 1e-10


def make_model(seed=0, Ny=8, Nx=16, Ng=4):
    rng = np.random.default_rng(seed)
    H = rng.standard_normal((Ny, Nx))
    return build_block_model(H, np.eye(Nx), equal_blocks(Nx, Ng)), rng


def dense_Sy(model, lam, gamma, indices=None):
    indices = range(model.Ng) if indices is None else indices
    Sy = lam * np.eye(model.Ny)
    for k in indices:
        Sy = Sy + gamma[k] * model.Hi[k] @ model.Hi[k].T
    return Sy


@pytest.mark.parametrize(
    "lam, gamma",
    [
        (1.0, [1.0, 1.0, 1.0, 1.0]),
        (0.1, [5.0, 0.0, 0.0, 2.0]),
        (0.0, [1.0, 2.0, 3.0, 4.0]),
        (2.5, [0.0, 0.0, 0.0, 0.0]),
    ],
)
def test_model_covariance_is_symmetric_and_matches_dense(lam, gamma):
    model, _ = make_model()
    gamma = np.asarray(gamma)

    cov = model_covariance(model, lam, gamma)

    assert cov.Sy.shape == cov.iSy.shape == (model.Ny, model.Ny)
    assert np.array_equal(cov.Sy, cov.Sy.T)
    assert np.array_equal(cov.iSy, cov.iSy.T)
    assert np.allclose(cov.Sy, dense_Sy(model, lam, gamma), rtol=RTOL, atol=ATOL)
    assert np.allclose(cov.iSy, npl.inv(cov.Sy), rtol=1e-6, atol=1e-8)
    assert not cov.used_fallback


def test_model_covariance_restricted_to_block_subset():
    model, rng = make_model(seed=1)
    gamma = rng.uniform(0.5, 2.0, size=model.Ng)
    cov = model_covariance(model, 0.3, gamma, indices=[1, 3])
    assert np.allclose(cov.Sy, dense_Sy(model, 0.3, gamma, indices=[1, 3]), rtol=RTOL, atol=ATOL)


def test_singular_model_covariance_uses_tagged_fallback(caplog):
    model, _ = make_model(seed=2)

    with caplog.at_level(logging.WARNING):
        cov = model_covariance(model, 0.0, np.zeros(model.Ng))

    assert cov.method == "pseudo_inverse"
    assert cov.used_fallback
    assert np.array_equal(cov.iSy, np.zeros((model.Ny, model.Ny)))
    assert "rank deficient" in caplog.text


def test_rank_deficient_model_covariance_returns_symmetric_pseudo_inverse():
    rng = np.random.default_rng(3)
    Ny, Nx = 10, 12
    H = rng.standard_normal((Ny, Nx))
    # the first block only reaches 3 sensors: Sy has exact zero rows when lambda = 0
    H[3:, :3] = 0.0
    model = build_block_model(H, np.eye(Nx), [np.arange(3), np.arange(3, 12)])

    cov = model_covariance(model, 0.0, np.array([1.0, 0.0]))

    assert cov.used_fallback
    assert np.array_equal(cov.iSy, cov.iSy.T)
    assert np.allclose(cov.Sy @ cov.iSy @ cov.Sy, cov.Sy, atol=1e-8)


def test_log_evidence_matches_dense_formula():
    model, rng = make_model(seed=4)
    Y = rng.standard_normal((model.Ny, 50))
    Cy = data_covariance(Y)
    lam, gamma = 0.7, rng.uniform(0.5, 2.0, size=model.Ng)

    Sy = dense_Sy(model, lam, gamma)
    expected = -0.5 * (np.trace(Cy @ npl.inv(Sy)) + npl.slogdet(Sy)[1])

    assert np.isclose(log_evidence(model, Cy, lam, gamma), expected, rtol=RTOL, atol=ATOL)


def test_data_covariance():
    rng = np.random.default_rng(5)
    Y = rng.standard_normal((4, 30))
    assert np.allclose(data_covariance(Y), Y @ Y.T / 30)


def test_model_covariance_accepts_boolean_block_mask():
    model, rng = make_model(seed=6)
    gamma = rng.uniform(0.5, 2.0, size=model.Ng)
    mask = np.array([True, False, True, False])

    from_mask = model_covariance(model, 0.3, gamma, indices=mask)
    from_list = model_covariance(model, 0.3, gamma, indices=[0, 2])

    assert np.array_equal(from_mask.Sy, from_list.Sy)
    assert np.allclose(from_mask.Sy, dense_Sy(model, 0.3, gamma, indices=[0, 2]), rtol=RTOL, atol=ATOL)


@pytest.mark.parametrize(
    "indices, match",
    [
        (np.array([True, False]), "length 4"),
        (np.array([0.0, 2.0]), "integer"),
    ],
)
def test_model_covariance_rejects_malformed_indices(indices, match):
    model, _ = make_model(seed=7)
    with pytest.raises(ValueError, match=match):
        model_covariance(model, 0.3, np.ones(model.Ng), indices=indices)
