import math
import pickle

import pytest
import numpy as np

import flipmap.physics as phys

# --- Fixtures ---


@pytest.fixture
def default_params():
    return {"l1": 1.0, "l2": 1.0, "g": 9.81}


@pytest.fixture
def random_state():
    """A generic non-trivial state (angles ~ 30 deg, some velocity)."""
    return (0.5, -0.5, 0.2, -0.1)


def make_row(cell_id=1, **overrides):
    row = {
        "ids": cell_id,
        "theta1": 0.0,
        "theta2": 0.0,
        "dtheta1": 0.0,
        "dtheta2": 0.0,
        "d2theta1": 0.0,
        "d2theta2": 0.0,
        "l1": 1.0,
        "l2": 1.0,
        "prev": math.inf,
        "steps": 0,
        "ceiling": 1_000_000,
        "stopped": False,
        "expired": False,
    }
    row.update(overrides)
    return row


@pytest.fixture
def random_batch():
    """Fifty pendulums spread over the usual angle ranges."""
    rng = np.random.default_rng(0)
    rows = [
        make_row(
            i + 1,
            theta1=rng.uniform(0.0, 2 * np.pi),
            theta2=rng.uniform(0.0, np.pi),
        )
        for i in range(50)
    ]
    return phys.PendulumBatch.from_rows(rows)


# --- 1. Equations of Motion ---


def test_accelerations_match_closed_form(random_state, default_params):
    th1, th2, w1, w2 = random_state
    l1, l2, g = default_params.values()

    a = 2 * l1 + l2 - l2 * math.cos(2 * th1 - 2 * th2)
    expected1 = (
        -g * (2 * l1 + l2) * math.sin(th1)
        - l2 * g * math.sin(th1 - 2 * th2)
        - 2 * math.sin(th1 - th2) * l2 * (w2**2 * l2 - w1**2 * l1 * math.cos(th1 - th2))
    ) / (l1 * a)
    expected2 = (
        2
        * math.sin(th1 - th2)
        * (
            w1**2 * l1 * (l1 + l2)
            + g * (l1 + l2) * math.cos(th1)
            + w2**2 * l2**2 * math.cos(th1 - th2)
        )
    ) / (l2 * a)

    d1, d2 = phys.accelerations(th1, th2, w1, w2, l1, l2, g)
    assert d1 == pytest.approx(expected1, rel=1e-12)
    assert d2 == pytest.approx(expected2, rel=1e-12)


def test_equilibrium_is_at_rest(default_params):
    l1, l2, g = default_params.values()
    d1, d2 = phys.accelerations(0.0, 0.0, 0.0, 0.0, l1, l2, g)
    assert d1 == pytest.approx(0.0, abs=1e-15)
    assert d2 == pytest.approx(0.0, abs=1e-15)


def test_accelerations_are_odd(random_state, default_params):
    """Mirroring the pendulum mirrors its accelerations."""
    l1, l2, g = default_params.values()
    mirrored = tuple(-x for x in random_state)

    d1, d2 = phys.accelerations(*random_state, l1, l2, g)
    m1, m2 = phys.accelerations(*mirrored, l1, l2, g)

    np.testing.assert_allclose([m1, m2], [-d1, -d2], rtol=1e-12)


def test_semi_implicit_updates_velocity_first(random_state, default_params):
    l1, l2, g = default_params.values()
    th1, th2, w1, w2 = random_state
    dt = 0.01

    d1, d2 = phys.accelerations(th1, th2, w1, w2, l1, l2, g)
    new = phys.semi_implicit_step(th1, th2, w1, w2, l1, l2, dt, g)

    assert new[2] == pytest.approx(w1 + d1 * dt)
    assert new[3] == pytest.approx(w2 + d2 * dt)
    assert new[0] == pytest.approx(th1 + (w1 + d1 * dt) * dt)
    assert new[1] == pytest.approx(th2 + (w2 + d2 * dt) * dt)


def test_accelerations_vectorise(default_params):
    l1, l2, g = default_params.values()
    th1 = np.array([0.1, 1.0, -2.0])
    th2 = np.array([0.4, -0.3, 3.0])
    w = np.array([0.0, 1.5, -0.5])

    d1, d2 = phys.accelerations(th1, th2, w, -w, l1, l2, g)
    for i in range(3):
        s1, s2 = phys.accelerations(th1[i], th2[i], w[i], -w[i], l1, l2, g)
        assert d1[i] == pytest.approx(s1)
        assert d2[i] == pytest.approx(s2)


def test_get_coords_hanging():
    x1, y1, x2, y2 = phys.get_coords(0.0, 0.0, 2.0, 3.0)
    np.testing.assert_allclose([x1, y1, x2, y2], [0.0, -2.0, 0.0, -5.0], atol=1e-15)


# --- 2. Flip Detection ---


@pytest.mark.parametrize(
    "prev, theta2, dtheta2, expected",
    [
        (3.13, 3.15, 1.0, True),  # forwards through +pi
        (3.15, 3.13, -1.0, True),  # backwards through +pi
        (-3.13, -3.15, -1.0, True),  # backwards through -pi
        (-3.13, -3.15, 1.0, True),
        (1.0, 1.1, 1.0, False),  # no crossing
        (3.13, 3.15, -1.0, False),  # crossing against the velocity
        (3.15, 3.13, 1.0, False),
        (math.inf, 3.15, 1.0, False),  # no history yet
    ],
)
def test_flipped(prev, theta2, dtheta2, expected):
    assert bool(phys.flipped(theta2, prev, dtheta2)) is expected


def test_flipped_vectorised():
    prev = np.array([3.13, 1.0, np.inf])
    theta2 = np.array([3.15, 1.1, 3.15])
    dtheta2 = np.array([1.0, 1.0, 1.0])
    np.testing.assert_array_equal(
        phys.flipped(theta2, prev, dtheta2), [True, False, False]
    )


# --- 3. Batched Integration ---


def test_first_step_never_stops():
    """A crossing on the very first step has no history to compare with."""
    row = make_row(theta2=np.pi - 1e-3, dtheta2=5.0)
    batch = phys.PendulumBatch.from_rows([row])

    out = batch.integrate(1)

    assert out.theta2[0] > np.pi
    assert not out.stopped[0]
    assert np.isfinite(out.prev[0])


def test_crossing_with_history_stops():
    row = make_row(theta2=np.pi - 1e-3, dtheta2=5.0, prev=np.pi - 2e-3)
    out = phys.PendulumBatch.from_rows([row]).integrate(10)

    assert out.stopped[0]
    assert not out.expired[0]
    assert out.steps[0] == 1


def test_budget_expires_cell():
    row = make_row(ceiling=5)
    out = phys.PendulumBatch.from_rows([row]).integrate(100)

    assert out.stopped[0]
    assert out.expired[0]
    assert out.steps[0] == 5


def test_budget_reached_on_last_step_expires_in_same_call():
    row = make_row(ceiling=10)
    out = phys.PendulumBatch.from_rows([row]).integrate(10)

    assert out.expired[0]
    assert out.steps[0] == 10


def test_stopped_cells_do_not_move():
    row = make_row(theta1=1.0, theta2=0.5, stopped=True, steps=7)
    batch = phys.PendulumBatch.from_rows([row])
    out = batch.integrate(50)

    assert out.steps[0] == 7
    assert out.theta1[0] == 1.0
    assert out.theta2[0] == 0.5


def test_integrate_leaves_input_untouched(random_batch):
    before = random_batch.copy()
    random_batch.integrate(20)
    np.testing.assert_array_equal(random_batch.theta1, before.theta1)
    np.testing.assert_array_equal(random_batch.steps, before.steps)
    np.testing.assert_array_equal(random_batch.stopped, before.stopped)


def test_stopped_is_monotonic(random_batch):
    batch = random_batch
    seen = np.zeros(len(batch), dtype=bool)
    for _ in range(20):
        batch = batch.integrate(25)
        assert np.all(batch.stopped[seen])
        seen |= batch.stopped


def test_chunked_integration_matches_whole(random_batch):
    whole = random_batch.integrate(300)
    pieces = phys.PendulumBatch.concatenate(
        [chunk.integrate(300) for chunk in random_batch.chunks(7)]
    )

    np.testing.assert_array_equal(pieces.ids, whole.ids)
    np.testing.assert_array_equal(pieces.steps, whole.steps)
    np.testing.assert_array_equal(pieces.stopped, whole.stopped)
    np.testing.assert_allclose(pieces.theta2, whole.theta2, rtol=1e-9)


def test_non_finite_state_raises():
    rows = [make_row(1, theta1=0.3), make_row(7, theta1=np.nan)]
    batch = phys.PendulumBatch.from_rows(rows)

    with pytest.raises(phys.NumericalDivergenceError) as info:
        batch.integrate(5)

    assert info.value.cell_id == 7
    assert math.isnan(info.value.state["theta1"])
    assert "cell 7" in str(info.value)


def test_divergence_reports_last_finite_state():
    # Zero first arm with aligned arms makes the accelerations 0/0
    row = make_row(3, theta1=0.3, theta2=0.3, dtheta1=0.1, l1=0.0, steps=4)
    batch = phys.PendulumBatch.from_rows([row])

    with pytest.raises(phys.NumericalDivergenceError) as info:
        batch.integrate(5)

    state = info.value.state
    assert state["theta1"] == 0.3
    assert state["theta2"] == 0.3
    assert state["dtheta1"] == 0.1
    assert math.isnan(state["d2theta1"])
    assert state["steps"] == 5


def test_divergence_error_pickles():
    """Errors must survive the trip back from a worker process."""
    err = phys.NumericalDivergenceError(3, {"theta1": float("nan")})
    copy = pickle.loads(pickle.dumps(err))
    assert copy.cell_id == 3
    assert "theta1" in copy.state


def test_row_round_trip():
    row = make_row(4, theta1=0.25, steps=3)
    batch = phys.PendulumBatch.from_rows([row])
    assert batch.row(0) == row


def test_empty_batch():
    batch = phys.PendulumBatch.from_rows([])
    assert len(batch) == 0
    assert len(batch.integrate(10)) == 0
    assert len(phys.PendulumBatch.concatenate([])) == 0
