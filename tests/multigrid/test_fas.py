"""Unit tests for the FAS nonlinear multigrid solver.

Tests are designed to run quickly by testing the cycle structure on small
chains before end-to-end solves.

Run with: pytest tests/multigrid/test_fas.py -v
"""

import numpy as np
import pytest

from nlmg.datastructures import Cycle, FASParameters, NLSolverParameters, StepKind
from nlmg.exceptions import ConfigurationError
from nlmg.operators import IdentityTransfer
from nlmg.solvers import (
    ExponentialCoefficient,
    FASLevel,
    FASSolver,
    LevelSolver,
)


class RecordingTransfer(IdentityTransfer):
    """Identity transfer that records every call."""

    def __init__(self, num_levels, calls):
        super().__init__(num_levels)
        self.calls = calls

    def restrict(self, level, fine):
        self.calls.append(("restrict", level))
        return super().restrict(level, fine)

    def interpolate(self, level, coarse):
        self.calls.append(("interpolate", level))
        return super().interpolate(level, coarse)

    def project(self, level, fine):
        self.calls.append(("project", level))
        return super().project(level, fine)


class RecordingFAS(FASSolver):
    """FAS solver that records smoothing calls next to the transfer calls."""

    def __init__(self, *args, calls, **kwargs):
        self.calls = calls
        super().__init__(*args, **kwargs)

    def smoothing(self, level):
        self.calls.append(("smooth", level))
        super().smoothing(level)


def identity_params(cycle, num_cycles=1, num_levels=2):
    """Two identical levels, no coarse relaxation."""
    return FASParameters(
        num_levels=num_levels,
        cycle=cycle,
        num_relax_fine=1,
        num_relax_mid=1,
        num_relax_coarse=0,
        nl_solve=NLSolverParameters(max_num_iter=num_cycles),
    )


@pytest.fixture
def coefficient():
    return ExponentialCoefficient(alpha=1.0)


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    """Level setup and configuration errors."""

    def test_levels_built(self, chain, coefficient):
        operators = [chain(8), chain(8), chain(8)]
        params = FASParameters(num_levels=3, num_relax_coarse=7)
        fas = FASSolver(operators, IdentityTransfer(3), coefficient, params)

        assert len(fas.levels) == 3
        assert all(isinstance(lvl, FASLevel) for lvl in fas.levels)
        assert [lvl.num_relax for lvl in fas.levels] == [1, 1, 7]
        assert fas.level_solver(2).params.max_num_iter == 7
        assert fas.level_solver(1).level == 1
        assert fas.step_kind is StepKind.FAS_CYCLE
        for lvl, op in zip(fas.levels, operators):
            assert lvl.sol.shape == (op.size,)
            assert lvl.solver.operator is op

    def test_level_print_level_follows_cycle(self, chain, coefficient):
        v = FASSolver([chain(4), chain(4)], IdentityTransfer(2), coefficient)
        fmg = FASSolver(
            [chain(4), chain(4)],
            IdentityTransfer(2),
            coefficient,
            FASParameters(cycle="fmg"),
        )
        assert v.cycle is Cycle.V_CYCLE
        assert fmg.cycle is Cycle.FMG
        assert v.level_solver(0).params.print_level == -1
        assert fmg.level_solver(0).params.print_level == 0

    def test_parameter_groups_per_level(self, chain, coefficient):
        params = FASParameters(
            num_levels=3,
            fine=NLSolverParameters(linearization="newton"),
            mid=NLSolverParameters(linearization="picard"),
            coarse=NLSolverParameters(linearization="picard", max_num_backtrack=3),
        )
        fas = FASSolver([chain(4)] * 3, IdentityTransfer(3), coefficient, params)
        assert fas.level_solver(0).step_kind is StepKind.NEWTON
        assert fas.level_solver(1).step_kind is StepKind.PICARD
        assert fas.level_solver(2).params.max_num_backtrack == 3
        # the configured groups are copied, not mutated
        assert params.coarse.max_num_iter == 50

    def test_operator_count_mismatch(self, chain, coefficient):
        with pytest.raises(ConfigurationError):
            FASSolver(
                [chain(4), chain(4)],
                IdentityTransfer(2),
                coefficient,
                FASParameters(num_levels=3),
            )

    def test_transfer_level_mismatch(self, chain, coefficient):
        with pytest.raises(ConfigurationError):
            FASSolver([chain(4), chain(4)], IdentityTransfer(3), coefficient)

    def test_no_levels(self, coefficient):
        with pytest.raises(ConfigurationError):
            FASSolver([], IdentityTransfer(1), coefficient, FASParameters(num_levels=0))

    def test_coefficient_list_length(self, chain, coefficient):
        with pytest.raises(ConfigurationError):
            FASSolver([chain(4), chain(4)], IdentityTransfer(2), [coefficient])

    def test_unknown_cycle(self, chain, coefficient):
        with pytest.raises(ConfigurationError):
            FASSolver(
                [chain(4), chain(4)],
                IdentityTransfer(2),
                coefficient,
                FASParameters(cycle="w_cycle"),
            )

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"num_relax_coarse": -3},
            {"num_relax_fine": -1},
            {"coarse_correct_tol": -1.0},
            {"coarse": NLSolverParameters(max_num_backtrack=-1)},
            {"nl_solve": NLSolverParameters(max_num_iter=-1)},
        ],
    )
    def test_out_of_range_parameters_rejected(self, chain, coefficient, kwargs):
        with pytest.raises(ConfigurationError):
            FASSolver(
                [chain(4), chain(4)],
                IdentityTransfer(2),
                coefficient,
                FASParameters(**kwargs),
            )

    def test_caller_parameters_not_modified(self, chain, coefficient):
        params = FASParameters(cycle="fmg")
        fas = FASSolver([chain(4), chain(4)], IdentityTransfer(2), coefficient, params)
        assert fas.cycle is Cycle.FMG
        assert fas.fas_params.cycle is Cycle.FMG
        assert params.cycle == "fmg"


# =============================================================================
# Cycle structure
# =============================================================================


class TestCycleStructure:
    """Order of smoothing and transfer calls within one cycle."""

    def _run(self, chain, source_rhs, coefficient, cycle, **params):
        calls = []
        fas = RecordingFAS(
            [chain(4), chain(4)],
            RecordingTransfer(2, calls),
            coefficient,
            FASParameters(cycle=cycle, nl_solve=NLSolverParameters(max_num_iter=1), **params),
            calls=calls,
        )
        rhs = source_rhs(fas.levels[0].solver.operator, source=2.0)
        fas.solve(rhs, np.zeros_like(rhs))
        return calls

    def test_v_cycle_order(self, chain, source_rhs, coefficient):
        calls = self._run(chain, source_rhs, coefficient, "v_cycle")
        assert calls == [
            ("smooth", 0),
            ("restrict", 0),
            ("project", 0),
            ("smooth", 1),
            ("interpolate", 0),
            ("smooth", 0),
        ]

    def test_fmg_skips_pre_smoothing(self, chain, source_rhs, coefficient):
        calls = self._run(chain, source_rhs, coefficient, "fmg")
        assert calls == [
            ("restrict", 0),
            ("project", 0),
            ("smooth", 1),
            ("interpolate", 0),
            ("smooth", 0),
        ]

    def test_coarse_correction_skipped_for_small_defect(
        self, chain, source_rhs, coefficient
    ):
        calls = self._run(
            chain, source_rhs, coefficient, "v_cycle", coarse_correct_tol=1e10
        )
        assert calls == [("smooth", 0), ("smooth", 0)]

    def test_single_level_is_relaxation(self, chain, source_rhs, coefficient):
        calls = []
        fas = RecordingFAS(
            [chain(4)],
            RecordingTransfer(1, calls),
            coefficient,
            FASParameters(num_levels=1, nl_solve=NLSolverParameters(max_num_iter=1)),
            calls=calls,
        )
        rhs = source_rhs(chain(4), source=2.0)
        fas.solve(rhs, np.zeros_like(rhs))
        assert calls == [("smooth", 0)]

    def test_relaxation_linear_tolerance(self, chain, source_rhs, coefficient):
        params = FASParameters(
            num_relax_coarse=1,
            nl_solve=NLSolverParameters(
                max_num_iter=1, init_linear_tol=1e-2, min_linear_tol=1e-12
            ),
            coarse=NLSolverParameters(linearization="picard"),
        )
        fas = FASSolver([chain(4), chain(4)], IdentityTransfer(2), coefficient, params)
        rhs = source_rhs(chain(4), source=2.0)
        fas.solve(rhs, np.zeros_like(rhs))

        assert fas.level_solver(0).operator.linear_tol == pytest.approx(1e-2)
        assert fas.level_solver(1).operator.linear_tol == pytest.approx(1e-4)


# =============================================================================
# Identity hierarchy against single-level solves
# =============================================================================


class TestIdentityHierarchy:
    """With identical levels and no coarse relaxation the coarse correction is
    zero, so a cycle reduces to its fine-level relaxations."""

    def _single(self, chain, coefficient, rhs, num_steps):
        solver = LevelSolver(
            chain(8), 0, coefficient, NLSolverParameters(max_num_iter=num_steps)
        )
        sol = np.zeros_like(rhs)
        solver.solve(rhs, sol)
        return sol

    def _fas(self, chain, coefficient, rhs, cycle):
        fas = FASSolver(
            [chain(8), chain(8)],
            IdentityTransfer(2),
            coefficient,
            identity_params(cycle),
        )
        sol = np.zeros_like(rhs)
        fas.solve(rhs, sol)
        return sol

    def test_fmg_cycle_equals_one_step(self, chain, source_rhs, coefficient):
        rhs = source_rhs(chain(8), source=4.0)
        expected = self._single(chain, coefficient, rhs, num_steps=1)
        result = self._fas(chain, coefficient, rhs, Cycle.FMG)
        np.testing.assert_allclose(result, expected, rtol=1e-10, atol=1e-12)

    def test_v_cycle_equals_two_steps(self, chain, source_rhs, coefficient):
        rhs = source_rhs(chain(8), source=4.0)
        expected = self._single(chain, coefficient, rhs, num_steps=2)
        result = self._fas(chain, coefficient, rhs, Cycle.V_CYCLE)
        np.testing.assert_allclose(result, expected, rtol=1e-10, atol=1e-12)


# =============================================================================
# End-to-end
# =============================================================================


class TestFASSolve:
    """Full solves on a three-level chain hierarchy."""

    @pytest.mark.parametrize("cycle", ["v_cycle", "fmg"])
    @pytest.mark.parametrize("linearization", ["newton", "picard"])
    def test_converges(self, chain, chain_hierarchy, source_rhs, cycle, linearization):
        operators, transfer = chain_hierarchy(num_fine=16, num_levels=3)
        level_params = NLSolverParameters(
            linearization=linearization, max_num_backtrack=4
        )
        params = FASParameters(
            num_levels=3,
            cycle=cycle,
            num_relax_coarse=10,
            nl_solve=NLSolverParameters(max_num_iter=40),
            fine=level_params,
            mid=level_params,
            coarse=level_params,
        )
        fas = FASSolver(operators, transfer, ExponentialCoefficient(alpha=0.5), params)
        rhs = source_rhs(operators[0], source=2.0)
        sol = np.zeros_like(rhs)

        state = fas.solve(rhs, sol)

        assert state.converged
        reference = LevelSolver(chain(16), 0, ExponentialCoefficient(alpha=0.5))
        ref_sol = np.zeros_like(rhs)
        reference.solve(rhs, ref_sol)
        np.testing.assert_allclose(sol, ref_sol, rtol=1e-5, atol=1e-7)

    def test_results(self, chain_hierarchy, source_rhs):
        operators, transfer = chain_hierarchy(num_fine=8, num_levels=2)
        fas = FASSolver(
            operators,
            transfer,
            ExponentialCoefficient(alpha=0.5),
            FASParameters(num_levels=2),
        )
        rhs = source_rhs(operators[0], source=2.0)
        fas.solve(rhs, np.zeros_like(rhs))

        metrics = fas.metrics().to_dataframe()
        history = fas.time_series().to_dataframe()
        assert metrics["method"].iloc[0] == "Nonlinear MG"
        assert len(history) == fas.state.iteration + 1
        assert fas.state.timing >= 0.0
