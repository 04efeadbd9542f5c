import contextlib
import io
import time
import unittest
from dataclasses import replace
from unittest.mock import patch

import casadi as ca
import numpy as np

from config.mpc import MPCConfig
from controllers import mpc as mpc_module
from controllers.mpc import PathTrackingMPC, solve
from models.kinematic_bicycle import Actuation, VehicleState, rollout
from solvers.base import Solution, SolveStatus
from utils.exceptions import ConfigurationError, NumericalDegeneracy, SolveFailure


def _config(**overrides) -> MPCConfig:
    """Generous time budget so slow CI machines do not turn into failures."""
    overrides.setdefault("solver_time_budget", 5.0)
    return MPCConfig(**overrides).validate()


class _FakeSolver:
    """Stands in for the CasADi nlpsol object"""

    def __init__(self, n_vars, return_status, x=None, cost=3.0, iterations=17):
        self.x = np.zeros(n_vars) if x is None else x
        self.cost = cost
        self._stats = {'return_status': return_status, 'iter_count': iterations}
        self.calls = 0

    def __call__(self, **kwargs):
        self.calls += 1
        return {'x': ca.DM(self.x), 'f': ca.DM(self.cost)}

    def stats(self):
        return self._stats


class PathTrackingMPCSolveTests(unittest.TestCase):
    def test_straight_line_steady_state(self):
        mpc = PathTrackingMPC(_config(horizon_length=10, dt=0.1, latency_steps=0, reference_speed=20.0))

        sol = mpc.solve(VehicleState(v=20.0), [0.0, 0.0, 0.0, 0.0], Actuation.zero())

        self.assertEqual(sol.status, SolveStatus.SUCCESS)
        self.assertIn(sol.return_status, ('Solve_Succeeded', 'Solved_To_Acceptable_Level'))
        self.assertEqual(len(sol.delta), 9)
        self.assertEqual(len(sol.a), 9)
        self.assertEqual(len(sol.trajectory_x), 9)
        self.assertLess(np.max(np.abs(sol.delta)), 1e-4)
        self.assertLess(np.max(np.abs(sol.a)), 1e-4)
        self.assertLess(sol.cost, 1e-6)
        np.testing.assert_allclose(sol.trajectory_x, 20.0 * 0.1 * np.arange(9), atol=1e-4)
        np.testing.assert_allclose(sol.trajectory_y, 0.0, atol=1e-4)

    def test_bounds_and_latency_lock(self):
        cfg = _config()
        mpc = PathTrackingMPC(cfg)
        previous = Actuation(0.1, 0.3)

        sol = mpc.solve([0.0, 0.0, 0.0, 10.0, 0.5, 0.05], [0.5, 0.05, 0.0, 0.0], previous)

        self.assertTrue(sol.success)
        for t in range(cfg.latency_steps):
            self.assertAlmostEqual(sol.delta[t], 0.1, places=9)
            self.assertAlmostEqual(sol.a[t], 0.3, places=9)
        self.assertTrue(np.all(np.abs(sol.delta) <= cfg.steering_bound))
        self.assertTrue(np.all(np.abs(sol.a) <= cfg.accel_bound))

        command = sol.command()
        self.assertEqual(sol.command_index, 2)
        self.assertAlmostEqual(command.delta, sol.delta[2])
        self.assertAlmostEqual(command.a, sol.a[2])

    def test_predicted_states_match_forward_simulation(self):
        cfg = _config(horizon_length=10, dt=0.1, latency_steps=0)
        mpc = PathTrackingMPC(cfg)
        state = np.array([0.0, 0.3, 0.02, 12.0, -0.3, 0.05])
        coeffs = np.array([-0.3, 0.05, 0.002, -0.0001])

        sol = mpc.solve(state, coeffs, Actuation.zero())

        self.assertTrue(sol.success)
        self.assertEqual(sol.predicted_states.shape, (10, 6))
        np.testing.assert_allclose(sol.predicted_states[0], state, atol=1e-8)
        np.testing.assert_array_equal(sol.trajectory_x, sol.predicted_states[:-1, 0])
        np.testing.assert_array_equal(sol.trajectory_y, sol.predicted_states[:-1, 1])

        replay = rollout(state, sol.delta, sol.a, coeffs, cfg.dt, cfg.lf)
        np.testing.assert_allclose(replay, sol.predicted_states, atol=1e-3)

    def test_minimal_horizon(self):
        mpc = PathTrackingMPC(_config(horizon_length=2, latency_steps=0))

        self.assertEqual(mpc.layout.n_constraints, 12)
        self.assertEqual(mpc.layout.n_vars, 14)

        sol = mpc.solve(VehicleState(v=10.0, cte=0.2), [0.2, 0.0, 0.0, 0.0], Actuation.zero())

        self.assertTrue(sol.success)
        self.assertEqual(len(sol.delta), 1)
        self.assertEqual(len(sol.a), 1)
        self.assertEqual(sol.command_index, 0)
        self.assertGreater(sol.command().a, 0.0)

    def test_initial_errors_decay_over_horizon(self):
        mpc = PathTrackingMPC(_config(horizon_length=10, dt=0.1, latency_steps=0))
        state = VehicleState(x=0.0, y=0.0, psi=0.0, v=10.0, cte=1.0, epsi=0.1)

        sol = mpc.solve(state, [0.0, 0.0, 0.0, 0.0], Actuation.zero())

        self.assertTrue(sol.success)
        final = sol.predicted_states[-1]
        self.assertLess(abs(final[4]), 0.1)
        self.assertLess(abs(final[5]), 0.1)
        self.assertTrue(np.all(np.abs(sol.delta) <= 0.436332))
        self.assertTrue(np.all(np.abs(sol.a) <= 1.0))

    def test_steers_back_towards_path(self):
        mpc = PathTrackingMPC(_config(horizon_length=10, dt=0.1, latency_steps=0, reference_speed=10.0))
        coeffs = [0.0, 0.0, 0.0, 0.0]

        left = mpc.solve(VehicleState(y=1.0, v=10.0, cte=-1.0), coeffs, Actuation.zero())
        right = mpc.solve(VehicleState(y=-1.0, v=10.0, cte=1.0), coeffs, Actuation.zero())

        self.assertTrue(left.success and right.success)
        self.assertGreater(np.max(np.abs(left.delta)), 1e-3)
        self.assertLess(left.delta[0], 0.0)
        self.assertGreater(right.delta[0], 0.0)
        np.testing.assert_allclose(left.delta, -right.delta, atol=1e-4)
        np.testing.assert_allclose(left.a, right.a, atol=1e-4)
        self.assertLess(abs(left.predicted_states[-1, 1]), 1.0)

    def test_saturated_command_feeds_back(self):
        cfg = _config(horizon_length=10, dt=0.1, latency_steps=1, reference_speed=20.0)
        mpc = PathTrackingMPC(cfg)
        state = VehicleState(v=10.0)
        coeffs = [0.0, 0.0, 0.0, 0.0]

        sol = mpc.solve(state, coeffs, Actuation.zero())

        self.assertTrue(sol.success)
        self.assertGreater(np.max(sol.a), 0.99)
        self.assertTrue(np.all(np.abs(sol.a) <= cfg.accel_bound))
        self.assertTrue(np.all(np.abs(sol.delta) <= cfg.steering_bound))

        command = sol.command()
        follow_up = mpc.solve(state, coeffs, command)

        self.assertTrue(follow_up.success)
        self.assertAlmostEqual(follow_up.a[0], command.a, places=9)
        self.assertTrue(np.all(np.abs(follow_up.a) <= cfg.accel_bound))

    def test_get_control_and_describe(self):
        mpc = PathTrackingMPC(_config(horizon_length=6, latency_steps=1, reference_speed=10.0))

        command = mpc.get_control(VehicleState(v=10.0), [0.0, 0.0, 0.0, 0.0], Actuation.zero())

        self.assertIsInstance(command, Actuation)
        self.assertAlmostEqual(command.delta, 0.0, places=4)
        self.assertEqual(mpc.describe(), {
            'horizon_length': 6,
            'dt': 0.05,
            'latency_steps': 1,
            'n_vars': 46,
            'n_constraints': 36,
            'command_index': 1,
        })

    def test_verbose_logging(self):
        buffer = io.StringIO()
        with contextlib.redirect_stdout(buffer):
            mpc = PathTrackingMPC(_config(horizon_length=4, latency_steps=0, verbose=True))
            mpc.solve(VehicleState(v=5.0), [0.0, 0.0, 0.0, 0.0], Actuation.zero())

        self.assertIn("[PathMPC] Horizon: 4 steps", buffer.getvalue())


class PathTrackingMPCInputTests(unittest.TestCase):
    def setUp(self):
        self.mpc = PathTrackingMPC(_config())
        self.state = VehicleState(v=10.0)

    def test_latency_covering_horizon_rejected(self):
        with self.assertRaises(ConfigurationError):
            PathTrackingMPC(MPCConfig(horizon_length=5, latency_steps=4))

    def test_previous_actuation_outside_bounds(self):
        with self.assertRaises(ConfigurationError):
            self.mpc.solve(self.state, [0.0] * 4, Actuation(1.0, 0.0))

    def test_malformed_inputs(self):
        with self.assertRaises(ConfigurationError):
            self.mpc.solve(self.state, [0.0, 0.0, 0.0], Actuation.zero())
        with self.assertRaises(ConfigurationError):
            self.mpc.solve([0.0] * 5, [0.0] * 4, Actuation.zero())
        with self.assertRaises(ConfigurationError):
            self.mpc.solve(self.state, [0.0] * 4, [0.0, 0.0, 0.0])

    def test_previous_actuation_as_sequence(self):
        sol = self.mpc.solve(self.state, [0.0] * 4, (0.05, 0.2))

        self.assertTrue(sol.success)
        self.assertAlmostEqual(sol.delta[0], 0.05, places=9)
        self.assertAlmostEqual(sol.a[1], 0.2, places=9)

    def test_nan_inputs_are_degenerate(self):
        with patch.object(self.mpc, '_solver_for') as solver_for:
            sol = self.mpc.solve(self.state, [0.0, float('nan'), 0.0, 0.0], Actuation.zero())

        solver_for.assert_not_called()
        self.assertEqual(sol.status, SolveStatus.FAILURE)
        self.assertTrue(sol.degenerate)
        self.assertEqual(sol.delta.size, 0)
        with self.assertRaises(NumericalDegeneracy):
            sol.raise_for_status()
        with self.assertRaises(SolveFailure):
            sol.command()

    def test_expired_deadline(self):
        with patch.object(self.mpc, '_solver_for') as solver_for:
            sol = self.mpc.solve(self.state, [0.0] * 4, Actuation.zero(),
                                 deadline=time.monotonic() - 1.0)

        solver_for.assert_not_called()
        self.assertFalse(sol.success)
        self.assertEqual(sol.return_status, 'Deadline_Expired')
        self.assertFalse(sol.degenerate)
        with self.assertRaises(SolveFailure) as ctx:
            sol.command()
        self.assertNotIsInstance(ctx.exception, NumericalDegeneracy)
        self.assertIs(ctx.exception.solution, sol)

    def test_short_deadline_uses_one_off_solver(self):
        with patch.object(self.mpc, '_create_solver', wraps=self.mpc._create_solver) as create:
            sol = self.mpc.solve(self.state, [0.0] * 4, Actuation.zero(),
                                 deadline=time.monotonic() + 2.0)

        create.assert_called_once()
        self.assertLessEqual(create.call_args[0][0], 2.0)
        self.assertTrue(sol.success)

    def test_distant_deadline_reuses_solver(self):
        with patch.object(self.mpc, '_create_solver') as create:
            sol = self.mpc.solve(self.state, [0.0] * 4, Actuation.zero(),
                                 deadline=time.monotonic() + 60.0)

        create.assert_not_called()
        self.assertTrue(sol.success)

    def test_deadline_solvers_are_cached(self):
        with patch.object(self.mpc, '_create_solver', wraps=self.mpc._create_solver) as create:
            for _ in range(3):
                sol = self.mpc.solve(self.state, [0.0] * 4, Actuation.zero(),
                                     deadline=time.monotonic() + 2.0)
                self.assertTrue(sol.success)

        create.assert_called_once()

    def test_build_time_charged_to_deadline(self):
        self.mpc._build_time = 3.0
        with patch.object(self.mpc, '_create_solver') as create:
            sol = self.mpc.solve(self.state, [0.0] * 4, Actuation.zero(),
                                 deadline=time.monotonic() + 2.0)

        create.assert_not_called()
        self.assertEqual(sol.return_status, 'Deadline_Expired')

    def test_deadline_passing_during_build(self):
        self.mpc._build_time = 0.0
        build = self.mpc._create_solver

        def slow_build(time_budget):
            solver = build(time_budget)
            time.sleep(0.4)
            return solver

        with patch.object(self.mpc, '_create_solver', side_effect=slow_build):
            sol = self.mpc.solve(self.state, [0.0] * 4, Actuation.zero(),
                                 deadline=time.monotonic() + 0.3)

        self.assertFalse(sol.success)
        self.assertEqual(sol.return_status, 'Deadline_Expired')


class SolverStatusTests(unittest.TestCase):
    def setUp(self):
        self.mpc = PathTrackingMPC(_config())
        self.n_vars = self.mpc.layout.n_vars

    def _solve_with(self, fake):
        with patch.object(self.mpc, '_solver_for', return_value=fake):
            return self.mpc.solve(VehicleState(v=10.0), [0.0] * 4, Actuation.zero())

    def test_non_converged_status_rejected(self):
        for status in ('Infeasible_Problem_Detected', 'Maximum_WallTime_Exceeded',
                       'Maximum_Iterations_Exceeded', 'Restoration_Failed'):
            with self.subTest(status=status):
                fake = _FakeSolver(self.n_vars, status)
                sol = self._solve_with(fake)

                self.assertEqual(fake.calls, 1)
                self.assertEqual(sol.status, SolveStatus.FAILURE)
                self.assertEqual(sol.return_status, status)
                self.assertEqual(sol.iterations, 17)
                self.assertAlmostEqual(sol.cost, 3.0)
                self.assertEqual(sol.trajectory_x.size, 0)
                self.assertEqual(sol.trajectory_y.size, 0)
                self.assertEqual(sol.delta.size, 0)
                self.assertEqual(sol.a.size, 0)
                self.assertIsNone(sol.predicted_states)
                self.assertFalse(sol.degenerate)
                with self.assertRaises(SolveFailure):
                    sol.command()

    def test_acceptable_level_is_success(self):
        x = np.zeros(self.n_vars)
        x[self.mpc.layout.delta_start + 2] = 0.2
        sol = self._solve_with(_FakeSolver(self.n_vars, 'Solved_To_Acceptable_Level', x=x))

        self.assertTrue(sol.success)
        self.assertAlmostEqual(sol.command().delta, 0.2)

    def test_nan_solver_output_is_degenerate(self):
        x = np.zeros(self.n_vars)
        x[5] = np.nan
        sol = self._solve_with(_FakeSolver(self.n_vars, 'Solve_Succeeded', x=x))

        self.assertFalse(sol.success)
        self.assertTrue(sol.degenerate)
        with self.assertRaises(NumericalDegeneracy):
            sol.raise_for_status()

    def test_invalid_number_status_is_degenerate(self):
        sol = self._solve_with(_FakeSolver(self.n_vars, 'Invalid_Number_Detected'))

        self.assertFalse(sol.success)
        self.assertTrue(sol.degenerate)
        with self.assertRaises(NumericalDegeneracy):
            sol.command()

    def test_relaxed_bounds_clipped_on_extraction(self):
        lay = self.mpc.layout
        cfg = self.mpc.config
        x = np.zeros(self.n_vars)
        x[lay.delta_start + 2] = cfg.steering_bound + 2e-9
        x[lay.a_start + 2] = cfg.accel_bound + 2e-9
        x[lay.a_start + 3] = -cfg.accel_bound - 2e-9
        sol = self._solve_with(_FakeSolver(self.n_vars, 'Solve_Succeeded', x=x))

        self.assertEqual(sol.delta[2], cfg.steering_bound)
        self.assertEqual(sol.a[2], cfg.accel_bound)
        self.assertEqual(sol.a[3], -cfg.accel_bound)

        # The command is accepted as the locked actuation of the next cycle
        follow_up = self.mpc.solve(VehicleState(v=10.0), [0.0] * 4, sol.command())
        self.assertTrue(follow_up.success)
        self.assertAlmostEqual(follow_up.a[0], cfg.accel_bound, places=9)


class SolutionTests(unittest.TestCase):
    def test_failed_summary(self):
        sol = Solution.failed(return_status='Infeasible_Problem_Detected', message='IPOPT returned it')
        info = sol.summary()

        self.assertEqual(info['status'], 'failure')
        self.assertEqual(info['message'], 'IPOPT returned it')
        self.assertNotIn('delta', info)

    def test_success_summary(self):
        sol = Solution(status=SolveStatus.SUCCESS, delta=np.array([0.1, 0.2]), a=np.array([0.5, 0.6]),
                       cost=1.5, command_index=1)
        info = sol.summary()

        self.assertEqual(info['status'], 'success')
        self.assertAlmostEqual(info['delta'], 0.2)
        self.assertAlmostEqual(info['a'], 0.6)


class ModuleSolveTests(unittest.TestCase):
    def setUp(self):
        mpc_module._controller_for.cache_clear()

    def tearDown(self):
        mpc_module._controller_for.cache_clear()

    def test_controllers_cached_per_config(self):
        cfg = _config(horizon_length=6, latency_steps=1, reference_speed=10.0)

        first = solve(VehicleState(v=10.0), [0.0] * 4, Actuation.zero(), config=cfg)
        second = solve(VehicleState(v=10.0), [0.0] * 4, first.command(), config=replace(cfg))

        self.assertTrue(first.success and second.success)
        info = mpc_module._controller_for.cache_info()
        self.assertEqual(info.currsize, 1)
        self.assertEqual(info.hits, 1)

    def test_invalid_config_raises(self):
        with self.assertRaises(ConfigurationError):
            solve(VehicleState(v=10.0), [0.0] * 4, Actuation.zero(),
                  config=MPCConfig(horizon_length=4, latency_steps=3))


if __name__ == "__main__":
    unittest.main()
