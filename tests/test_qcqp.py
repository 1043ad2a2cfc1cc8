import numpy as np
import pytest
import scipy.sparse as sp
from scipy.optimize import minimize

from instanton import (
    IllPosedInputError,
    InstantonConfig,
    InstantonQCQPSolver,
    QuadraticForm,
    RootKind,
    SolveStatus,
    solve_instanton_qcqp,
)


def _three_var(k):
    A = np.array([[1.0, 1.0, 1.0]])
    b = np.array([1.0])
    Qobj = np.diag([1.0, 2.0, 0.0])
    Qtheta = np.diag([0.0, 0.0, 1.0])
    return (Qobj, 0, 0), (Qtheta, 0, k), A, b


def test_two_variable_closed_form_instanton():
    A = np.array([[1.0, 1.0]])
    b = np.array([1.0])
    G = (np.diag([1.0, 0.0]), 0, 0)
    Q = (np.diag([1.0, -1.0]), 0, 0.0)

    sol = solve_instanton_qcqp(G, Q, A, b, T=1)

    assert sol.status == SolveStatus.OPTIMAL
    np.testing.assert_allclose(sol.x, [0.5, 0.5], atol=1e-6)
    assert sol.score == pytest.approx(0.25, abs=1e-6)


def test_two_variable_closed_form_without_pinned_block():
    A = np.array([[1.0, 1.0]])
    b = np.array([1.0])
    x, score = solve_instanton_qcqp(
        (np.diag([1.0, 0.0]), 0, 0), (np.diag([1.0, -1.0]), 0, 0.0), A, b, T=0
    )
    np.testing.assert_allclose(x, [0.5, 0.5], atol=1e-6)
    assert score == pytest.approx(0.25, abs=1e-6)


def test_three_variable_closed_form_instanton():
    G, Q, A, b = _three_var(-0.25)
    sol = solve_instanton_qcqp(G, Q, A, b, T=1)

    assert sol.found
    np.testing.assert_allclose(sol.x, [1.0 / 3.0, 1.0 / 6.0, 0.5], atol=1e-6)
    assert sol.score == pytest.approx(1.0 / 6.0, abs=1e-6)


def test_selection_returns_cheapest_verified_candidate():
    G, Q, A, b = _three_var(-0.25)
    sol = solve_instanton_qcqp(G, Q, A, b, T=1)
    Q_of_x = QuadraticForm.from_triple(Q)

    assert len(sol.candidates) >= 2
    assert sol.score == min(c.score for c in sol.candidates)
    for cand in sol.candidates:
        np.testing.assert_allclose(A @ cand.x, b, atol=1e-8)
        assert abs(Q_of_x(cand.x)) < 1e-6
    assert sorted({round(c.x[2], 6) for c in sol.candidates}) == [-0.5, 0.5]


def test_unreachable_limit_returns_infinite_score():
    G, Q, A, b = _three_var(0.25)
    sol = solve_instanton_qcqp(G, Q, A, b, T=1)

    assert sol.status == SolveStatus.NO_INSTANTON
    assert np.isinf(sol.score)
    assert sol.x.size == 0
    x, score = sol
    assert x.size == 0 and score == float("inf")


def test_negative_semidefinite_thermal_form_is_equivalent():
    G, _, A, b = _three_var(-0.25)
    Q = (-np.diag([0.0, 0.0, 1.0]), 0, 0.25)
    sol = solve_instanton_qcqp(G, Q, A, b, T=1)
    assert sol.score == pytest.approx(1.0 / 6.0, abs=1e-6)


def test_singular_at_pole_block_is_reported_not_raised():
    A = np.array([[1.0, 1.0, 0.0]])
    b = np.array([1.0])
    G = (np.zeros((3, 3)), 0, 0)
    Q = (np.diag([0.0, 0.0, 1.0]), 0, -1.0)

    sol = solve_instanton_qcqp(G, Q, A, b, T=1)

    assert sol.status == SolveStatus.DEGENERATE
    assert np.isinf(sol.score)
    assert "singular" in sol.info["error"]


def test_rank_deficient_constraints_raise():
    A = np.array([[1.0, 1.0, 0.0], [2.0, 2.0, 0.0]])
    b = np.array([1.0, 2.0])
    with pytest.raises(IllPosedInputError):
        solve_instanton_qcqp(
            (np.diag([1.0, 1.0, 0.0]), 0, 0), (np.diag([0.0, 0.0, 1.0]), 0, -1.0), A, b, T=1
        )


def test_dimension_mismatch_raises():
    with pytest.raises(IllPosedInputError):
        solve_instanton_qcqp(
            (np.eye(3), 0, 0), (np.eye(3), 0, -1.0), np.ones((1, 2)), np.ones(1), T=1
        )


def test_indefinite_reduced_thermal_form_raises():
    A = np.array([[0.0, 0.0, 1.0]])
    with pytest.raises(IllPosedInputError):
        solve_instanton_qcqp(
            (np.eye(3), 0, 0), (np.diag([1.0, -1.0, 0.0]), 0, -1.0), A, np.zeros(1), T=0
        )


def test_matches_multistart_local_solver():
    rng = np.random.default_rng(7)
    n, T = 5, 2
    A = rng.standard_normal((2, n))
    b = rng.standard_normal(2)
    Qobj = np.diag([1.0, 3.0, 0.0, 0.0, 0.0])
    Qtheta = np.diag([0.0, 0.0, 0.0, 1.0, 1.0])
    k = -1.0

    sol = InstantonQCQPSolver().solve((Qobj, 0, 0), (Qtheta, 0, k), A, b, T)
    assert sol.found

    cons = [
        {"type": "eq", "fun": lambda x: A @ x - b},
        {"type": "eq", "fun": lambda x: np.array([x @ Qtheta @ x + k])},
    ]
    best = np.inf
    for _ in range(20):
        res = minimize(
            lambda x: x @ Qobj @ x,
            rng.standard_normal(n),
            method="SLSQP",
            constraints=cons,
            options={"ftol": 1e-12, "maxiter": 500},
        )
        feasible = (
            np.linalg.norm(A @ res.x - b) < 1e-7
            and abs(res.x @ Qtheta @ res.x + k) < 1e-7
        )
        if res.success and feasible:
            best = min(best, res.fun)

    assert np.isfinite(best)
    assert sol.score <= best + 1e-6


def test_tiny_thermal_margin_is_still_reachable():
    G, Q, A, b = _three_var(-4e-9)
    sol = solve_instanton_qcqp(G, Q, A, b, T=1)

    assert sol.status == SolveStatus.OPTIMAL
    assert sol.x[2] == pytest.approx(np.sqrt(4e-9), rel=1e-6)
    np.testing.assert_allclose(A @ sol.x, b, atol=1e-12)
    assert sol.score == pytest.approx(2.0 / 3.0 * (1.0 - sol.x[2]) ** 2, abs=1e-12)


def test_bisection_cap_reports_stalled_status():
    G, Q, A, b = _three_var(-0.25)
    sol = InstantonQCQPSolver(InstantonConfig(secular_max_iter=1)).solve(G, Q, A, b, 1)

    assert sol.status == SolveStatus.STALLED
    assert np.isinf(sol.score)
    assert sol.x.size == 0
    assert sol.info["stalled"] == 2


def test_candidate_failing_verification_is_rejected(monkeypatch):
    G, Q, A, b = _three_var(-0.25)
    solver = InstantonQCQPSolver()
    candidates = solver._candidates

    def with_infeasible_extra(blocks, info):
        pairs, info = candidates(blocks, info)
        # w = 0 maps back to the translation point, which misses the thermal limit
        w = np.zeros(blocks.at_pole + blocks.off_pole)
        return pairs + [(0.0, w, RootKind.REGULAR)], info

    monkeypatch.setattr(solver, "_candidates", with_infeasible_extra)
    sol = solver.solve(G, Q, A, b, 1)

    assert sol.status == SolveStatus.OPTIMAL
    assert sol.info["rejected"] == 1
    assert len(sol.candidates) == 2
    assert sol.score == pytest.approx(1.0 / 6.0, abs=1e-6)
    for cand in sol.candidates:
        assert cand.thermal_residual < 1e-6


def test_at_pole_thermal_linear_term_with_off_pole_block_is_degenerate():
    A = np.array([[1.0, 0.0, 0.0]])
    G = (np.eye(3), 0, 0)
    Q = (np.diag([0.0, 0.0, 1.0]), np.array([0.0, 1.0, 0.0]), -1.0)

    sol = solve_instanton_qcqp(G, Q, A, np.zeros(1), T=0)

    assert sol.status == SolveStatus.DEGENERATE
    assert "at-pole" in sol.info["error"]


def test_sparse_inputs_are_densified():
    G, Q, A, b = _three_var(-0.25)
    G_sp = (sp.csr_matrix(G[0]), 0, 0)
    Q_sp = (sp.csr_matrix(Q[0]), 0, Q[2])

    sol = solve_instanton_qcqp(G_sp, Q_sp, sp.csr_matrix(A), b, T=1)

    assert sol.found
    np.testing.assert_allclose(sol.x, [1.0 / 3.0, 1.0 / 6.0, 0.5], atol=1e-6)
    assert sol.score == pytest.approx(1.0 / 6.0, abs=1e-6)
