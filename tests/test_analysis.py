import numpy as np
import pytest
import scipy.sparse as sp

from instanton import (
    IllPosedInputError,
    LineParams,
    LineProblem,
    SolveStatus,
    ThermalConstants,
    objective_matrix,
    solve_temporal_instanton,
    split_solution,
    thermal_matrix,
)

n, nr, T = 2, 1, 2
NVAR = (nr + n + 1) * T + T
SUSCEPTANCE = 10.0
INJECTION = np.array([0.9, -0.9])


def _network():
    """Bus balance and angle reference for a two-bus system with wind at bus 0."""
    stride = nr + n + 1
    rows, rhs = [], []
    for t in range(T):
        base = stride * t
        balance = [
            (-1.0, SUSCEPTANCE, -SUSCEPTANCE, -0.5),
            (0.0, -SUSCEPTANCE, SUSCEPTANCE, -0.5),
        ]
        for i, coeffs in enumerate(balance):
            row = np.zeros(NVAR)
            row[base : base + stride] = coeffs
            rows.append(row)
            rhs.append(INJECTION[i])
        row = np.zeros(NVAR)
        row[base + nr] = 1.0
        rows.append(row)
        rhs.append(0.0)
    return np.array(rows), np.array(rhs)


def _builder(k_by_index):
    def build(idx, line):
        stride = nr + n + 1
        if isinstance(line, LineParams):
            i, j = line.from_bus, line.to_bus
        else:
            i, j = line[0], line[1]
        A2 = np.zeros((T, NVAR))
        for t in range(T):
            A2[t, NVAR - T + t] = 1.0
            A2[t, stride * t + nr + i] = 1.0
            A2[t, stride * t + nr + j] = -1.0
        return LineProblem(A2=A2, k_qtheta=k_by_index[idx])

    return build


def _run(lines, lengths, k_by_index, **kw):
    A1, b = _network()
    b = np.concatenate([b, np.zeros(T)])
    return solve_temporal_instanton(
        lines,
        lengths,
        A1,
        b,
        objective_matrix(n, nr, T),
        thermal_matrix(n, nr, T),
        n,
        nr,
        T,
        _builder(k_by_index),
        **kw,
    )


def test_layout_matrices():
    Qobj = objective_matrix(n, nr, T)
    Qtheta = thermal_matrix(n, nr, T)
    assert Qobj.shape == Qtheta.shape == (NVAR, NVAR)
    np.testing.assert_array_equal(np.flatnonzero(np.diag(Qobj)), [0, 4])
    np.testing.assert_array_equal(np.flatnonzero(np.diag(Qtheta)), [8, 9])
    assert np.count_nonzero(Qobj) == 2 and np.count_nonzero(Qtheta) == 2


def test_split_solution():
    dev, ang, alpha, diffs = split_solution(np.arange(10.0), n, nr, T)
    np.testing.assert_array_equal(dev, [[0.0], [4.0]])
    np.testing.assert_array_equal(ang, [[1.0, 2.0], [5.0, 6.0]])
    np.testing.assert_array_equal(alpha, [3.0, 7.0])
    np.testing.assert_array_equal(diffs, [8.0, 9.0])


def test_split_solution_wrong_size_raises():
    with pytest.raises(IllPosedInputError):
        split_solution(np.zeros(NVAR + 1), n, nr, T)


def test_thermal_constant():
    assert ThermalConstants(a=2.0, c=4.0, d=0.0, f=10.0).k_qtheta(30.0) == pytest.approx(10.0)


def test_batch_skips_zero_length_lines_and_reports_progress():
    lines = [LineParams(0, 1, 0.01, 0.1, 1.0), LineParams(1, 0, 0.0, 0.0, 0.0), (0, 1)]
    calls = []
    res = _run(
        lines,
        [1.0, 0.0, 2.0],
        {0: -0.02, 2: -0.02},
        progress=lambda done, total: calls.append((done, total)),
    )

    assert res.line_index == [0, 2]
    assert res.lines == [(0, 1), (0, 1)]
    assert calls == [(1, 2), (2, 2)]
    assert all(s == SolveStatus.OPTIMAL for s in res.status)

    # nearest point of the thermal circle to the forecast: dev = (0.2, 0.2)
    for i in range(len(res)):
        assert res.score[i] == pytest.approx(0.08, abs=1e-6)
        np.testing.assert_allclose(res.deviations[i].ravel(), [0.2, 0.2], atol=1e-6)
        np.testing.assert_allclose(res.angle_diffs[i], [-0.1, -0.1], atol=1e-6)
        assert res.angles[i].shape == (T, n)
        np.testing.assert_allclose(res.angles[i][:, 0], 0.0, atol=1e-9)
        assert float(res.angle_diffs[i] @ res.angle_diffs[i]) == pytest.approx(0.02, abs=1e-6)


def test_unreachable_line_is_recorded_with_infinite_score():
    res = _run([(0, 1), (0, 1)], [1.0, 1.0], {0: 0.01, 1: -0.02})

    assert res.status[0] == SolveStatus.NO_INSTANTON
    assert np.isinf(res.score[0])
    assert res.deviations[0].shape == (0, nr)
    assert res.angles[0].shape == (0, n)
    assert np.all(np.isnan(res.mismatch[0])) and res.mismatch[0].shape == (T,)
    assert res.angle_diffs[0].size == 0
    assert res.best() == 1


def test_best_is_none_when_nothing_found():
    res = _run([(0, 1)], [1.0], {0: 0.01})
    assert res.best() is None


def test_to_frame_columns():
    res = _run([(0, 1)], [1.0], {0: -0.02})
    frame = res.to_frame()
    assert list(frame.columns) == ["line_index", "from_bus", "to_bus", "score", "status"]
    assert frame.loc[0, "status"] == SolveStatus.OPTIMAL.value
    assert frame.loc[0, "score"] == pytest.approx(0.08, abs=1e-6)


def test_mismatched_inputs_raise():
    with pytest.raises(IllPosedInputError):
        _run([(0, 1)], [1.0, 2.0], {0: -0.02})

    A1, b = _network()
    with pytest.raises(IllPosedInputError):
        solve_temporal_instanton(
            [(0, 1)],
            [1.0],
            A1[:, :-1],
            b,
            objective_matrix(n, nr, T),
            thermal_matrix(n, nr, T),
            n,
            nr,
            T,
            _builder({0: -0.02}),
        )


def test_sparse_network_blocks_match_dense():
    A1, b = _network()
    b = np.concatenate([b, np.zeros(T)])
    res = solve_temporal_instanton(
        [(0, 1)],
        [1.0],
        sp.csr_matrix(A1),
        b,
        sp.csr_matrix(objective_matrix(n, nr, T)),
        sp.csr_matrix(thermal_matrix(n, nr, T)),
        n,
        nr,
        T,
        _builder({0: -0.02}),
    )
    assert res.status == [SolveStatus.OPTIMAL]
    assert res.score[0] == pytest.approx(0.08, abs=1e-6)
