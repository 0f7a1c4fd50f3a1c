"""
PAWS Unit and Integration Tests

Run with: pytest test_paws.py -v
"""

# Import PAWS components
import dataclasses
import json
import sys
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from scipy import stats

sys.path.insert(0, str(Path(__file__).parent))

from PAWS import (
    RANDOM_STATE,
    AuditLog,
    FitFailure,
    SchemaError,
    SyntheticDataGenerator,
    apply_multiple_testing_correction,
    association_direction,
    build_formula,
    contingency_table,
    declare_column_types,
    evaluate,
    filter_sparse_columns,
    first_sparse_cell,
    fisher_exact_test,
    fit_outcome_model,
    flag_implausible_estimates,
    infer_outcome_family,
    normalize_binary_target,
    run_paws_analysis,
    screen,
    significance_tier,
    smart_read_file,
    tier_stars,
)

PREDICTORS = SyntheticDataGenerator.PREDICTORS
OUTCOMES = SyntheticDataGenerator.BINARY_OUTCOMES + SyntheticDataGenerator.CONTINUOUS_OUTCOMES


class TestSparseContingencyFilter:
    """Tests for removal of predictors with undersized contingency cells."""

    def test_drops_sparse_and_keeps_integer(self, small_survey):
        """Test that sparse columns are dropped and integer columns kept."""
        filtered, dropped = filter_sparse_columns(small_survey, "y", threshold=10)
        assert dropped == ["rare", "weight"]
        assert list(filtered.columns) == ["y", "balanced", "count"]

    def test_input_not_modified(self, small_survey):
        """Test that filtering leaves the input frame untouched."""
        before = small_survey.copy()
        filter_sparse_columns(small_survey, "y", threshold=10)
        pd.testing.assert_frame_equal(small_survey, before)

    def test_integer_column_exempt_even_when_sparse(self):
        """Test that integer columns are never tabulated."""
        df = pd.DataFrame(
            {"y": [True, False] * 10, "dose": np.arange(20, dtype="int64")}
        )
        _, dropped = filter_sparse_columns(df, "y", threshold=10)
        assert dropped == []

    def test_threshold_one_still_drops_empty_cells(self, small_survey):
        """Test that empty cells fail even the smallest threshold."""
        _, dropped = filter_sparse_columns(small_survey, "y", threshold=1)
        # rare has an empty (True, False) cell, weight has many empty cells
        assert dropped == ["rare", "weight"]

    def test_all_dropped_is_allowed(self):
        """Test that every predictor may be removed."""
        df = pd.DataFrame({"y": [True] * 30 + [False] * 30, "z": [True] * 3 + [False] * 57})
        filtered, dropped = filter_sparse_columns(df, "y")
        assert dropped == ["z"]
        assert list(filtered.columns) == ["y"]

    def test_missing_outcome_raises(self, small_survey):
        """Test schema error for an absent outcome."""
        with pytest.raises(SchemaError):
            filter_sparse_columns(small_survey, "not_a_column")

    @pytest.mark.parametrize("threshold", [0, -1, 2.5, True, "10"])
    def test_invalid_threshold_raises(self, small_survey, threshold):
        """Test rejection of non-positive or non-integer thresholds."""
        with pytest.raises(ValueError):
            filter_sparse_columns(small_survey, "y", threshold=threshold)

    def test_continuous_outcome_uses_level_counts(self):
        """Test one-way level counts for a continuous outcome."""
        np.random.seed(RANDOM_STATE)
        df = pd.DataFrame(
            {
                "score": np.random.normal(0, 1, 100),
                "grp": ["a"] * 95 + ["b"] * 5,
                "sex": ["f", "m"] * 50,
            }
        )
        table = contingency_table(df, "sex", "score")
        assert list(table["n"]) == [50, 50]
        _, dropped = filter_sparse_columns(df, "score", threshold=10)
        assert dropped == ["grp"]

    def test_retained_columns_meet_threshold(self, survey):
        """Test that every retained column has all cells at or above threshold."""
        for outcome in SyntheticDataGenerator.BINARY_OUTCOMES:
            filtered, _ = filter_sparse_columns(survey[[outcome] + PREDICTORS], outcome)
            for col in filtered.columns:
                if col == outcome or pd.api.types.is_integer_dtype(filtered[col]):
                    continue
                assert contingency_table(filtered, col, outcome).to_numpy().min() >= 10

    def test_audit_records_first_offending_cell(self, small_survey, temp_audit_log):
        """Test audit entry for dropped columns."""
        filter_sparse_columns(small_survey, "y", audit=temp_audit_log)
        entries = [json.loads(line) for line in temp_audit_log.jsonl_path.read_text().splitlines()]
        dropped = [e for e in entries if e["event"] == "SPARSE_COLUMNS_DROPPED"]
        assert len(dropped) == 1
        cols = dropped[0]["details"]["columns"]
        assert [c["column"] for c in cols] == ["rare", "weight"]
        assert cols[0]["count"] == 0

    def test_single_observed_level_dropped(self):
        """Test that a column with one level among complete rows is dropped."""
        df = pd.DataFrame(
            {
                "y": [True] * 30 + [False] * 30 + [None] * 10,
                "z": [False] * 60 + [True] * 10,
                "balanced": [True, False] * 35,
            }
        )
        filtered, dropped = filter_sparse_columns(df, "y", threshold=10)
        assert dropped == ["z"]
        assert list(filtered.columns) == ["y", "balanced"]


class TestContingencyTable:
    """Tests for contingency table construction."""

    def test_unused_categories_removed(self):
        """Test that unobserved categories do not appear."""
        df = pd.DataFrame(
            {
                "x": pd.Categorical(["a", "b"] * 10, categories=["a", "b", "c"]),
                "y": [True, False, False, True] * 5,
            }
        )
        table = contingency_table(df, "x", "y")
        assert list(table.index) == ["a", "b"]
        assert table.to_numpy().sum() == 20

    def test_missing_rows_excluded(self):
        """Test that rows missing either value are excluded."""
        df = pd.DataFrame({"x": ["a", None, "b", "a"], "y": [True, False, None, False]})
        table = contingency_table(df, "x", "y")
        assert table.to_numpy().sum() == 2

    def test_first_sparse_cell_is_row_major(self):
        """Test row-major scan order."""
        table = pd.DataFrame([[12, 3], [1, 20]], index=["a", "b"], columns=[False, True])
        assert first_sparse_cell(table, 10) == ("a", True, 3)

    def test_first_sparse_cell_none_when_dense(self):
        """Test None when no cell is undersized."""
        table = pd.DataFrame([[12, 13], [10, 20]], index=["a", "b"], columns=[False, True])
        assert first_sparse_cell(table, 10) is None


class TestNormalizeBinaryTarget:
    """Tests for binary target normalization."""

    def test_numeric_01(self):
        """Test 0/1 numeric target."""
        y = pd.Series([0, 1, 0, 1, 1])
        result = normalize_binary_target(y)
        assert list(result) == [0, 1, 0, 1, 1]

    def test_string_labels(self):
        """Test string binary labels."""
        y = pd.Series(["yes", "no", "yes", "no"])
        result = normalize_binary_target(y)
        assert list(result) == [1, 0, 1, 0]

    def test_categorical_follows_category_order(self):
        """Test categorical levels mapped by category order."""
        y = pd.Series(pd.Categorical(["high", "low", "low"], categories=["low", "high"]))
        assert list(normalize_binary_target(y)) == [1, 0, 0]

    def test_with_nan(self):
        """Test handling of missing values."""
        y = pd.Series([True, False, None, True], dtype="boolean")
        result = normalize_binary_target(y)
        assert str(result.dtype) == "Int64"
        assert result.isna().sum() == 1

    def test_non_binary_returns_none(self):
        """Test non-binary returns None."""
        assert normalize_binary_target(pd.Series(["a", "b", "c"])) is None


class TestFormulaAndFamily:
    """Tests for formula construction and outcome family inference."""

    def test_build_formula(self):
        """Test quoted additive formula."""
        assert build_formula("y", ["a", "b"], ["y", "a", "b"]) == "Q('y') ~ Q('a') + Q('b')"

    def test_intercept_only(self):
        """Test intercept-only formula for no predictors."""
        assert build_formula("y", [], ["y"]) == "Q('y') ~ 1"

    def test_unknown_column_raises(self):
        """Test schema error for unknown formula columns."""
        with pytest.raises(SchemaError) as exc:
            build_formula("y", ["a", "zz"], ["y", "a"])
        assert exc.value.columns == ["zz"]

    def test_families(self):
        """Test binomial and gaussian detection."""
        assert infer_outcome_family(pd.Series([True, False])) == "binomial"
        assert infer_outcome_family(pd.Series(["no", "yes", "no"])) == "binomial"
        assert infer_outcome_family(pd.Series([1.5, 2.0, 3.25])) == "gaussian"

    def test_multilevel_categorical_unsupported(self):
        """Test multi-level categorical outcomes are rejected."""
        with pytest.raises(SchemaError):
            infer_outcome_family(pd.Series(["a", "b", "c"]), "y")


class TestFitOutcomeModel:
    """Tests for single-outcome model fitting."""

    def test_logistic_odds_ratios(self, survey):
        """Test odds ratios for a binary outcome."""
        res = fit_outcome_model(survey, "aggression", PREDICTORS)
        assert res.family == "binomial"
        assert res.effect_column == "odds_ratio"
        assert "rare_practice" in res.dropped_columns
        assert res.predictors == [p for p in PREDICTORS if p != "rare_practice"]
        row = res.effects[res.effects["predictor"] == "punishment_used"].iloc[0]
        assert row["odds_ratio"] > 1
        assert row["ci_lower"] < row["odds_ratio"] < row["ci_upper"]
        assert row["direction"] == "positive"
        assert res.n_obs == len(survey)

    def test_protective_effect_is_negative(self, survey):
        """Test negative direction for a protective factor."""
        res = fit_outcome_model(survey, "fearfulness", PREDICTORS)
        row = res.effects[res.effects["predictor"] == "socialised_early"].iloc[0]
        assert row["odds_ratio"] < 1
        assert row["direction"] == "negative"

    def test_linear_outcome(self, survey):
        """Test slopes for a continuous outcome."""
        res = fit_outcome_model(survey, "behaviour_score", PREDICTORS)
        assert res.family == "gaussian"
        assert res.effect_column == "estimate"
        row = res.effects[res.effects["predictor"] == "punishment_used"].iloc[0]
        assert row["estimate"] > 0
        assert row["direction"] == "positive"

    def test_vif_table(self, survey):
        """Test VIF and GVIF per retained predictor."""
        res = fit_outcome_model(survey, "aggression", PREDICTORS)
        assert set(res.vif["predictor"]) == set(res.predictors)
        assert res.vif.set_index("predictor").loc["acquired_age_group", "df"] == 2
        assert (res.vif["vif"] >= 1 - 1e-9).all()
        assert np.isfinite(res.vif["vif_adj"]).all()

    def test_single_predictor_vif_is_one(self, survey):
        """Test VIF of a lone predictor."""
        res = fit_outcome_model(survey, "aggression", ["punishment_used"])
        assert res.vif["vif"].iloc[0] == pytest.approx(1.0)

    def test_intercept_only_when_everything_dropped(self, survey):
        """Test intercept-only fit when all predictors are sparse."""
        res = fit_outcome_model(survey, "aggression", ["rare_practice"])
        assert res.predictors == []
        assert res.formula.endswith("~ 1")
        assert res.effects.empty
        assert res.vif.empty
        assert list(res.coefficients["term"]) == ["Intercept"]

    def test_outcome_never_its_own_predictor(self, survey):
        """Test the outcome is removed from its own predictors."""
        res = fit_outcome_model(survey, "aggression", ["aggression", "punishment_used"])
        assert res.predictors == ["punishment_used"]

    def test_single_level_outcome_fails(self, survey):
        """Test fit failure for a constant outcome."""
        df = survey.assign(constant=True)
        with pytest.raises(FitFailure) as exc:
            fit_outcome_model(df, "constant", ["punishment_used"])
        assert exc.value.outcome == "constant"

    def test_result_is_immutable(self, survey):
        """Test model results are frozen."""
        res = fit_outcome_model(survey, "aggression", ["punishment_used"])
        with pytest.raises(dataclasses.FrozenInstanceError):
            res.outcome = "other"

    def test_flag_implausible_estimates(self, survey):
        """Test flagging of extreme estimates."""
        res = fit_outcome_model(survey, "aggression", PREDICTORS)
        assert flag_implausible_estimates(res) == []
        flagged = flag_implausible_estimates(res, max_abs_coef=0.0)
        assert flagged == list(res.effects["term"])

    def test_design_terms_mapped_to_predictors(self, survey):
        """Test design columns map back to predictor names."""
        res = fit_outcome_model(survey, "aggression", PREDICTORS)
        terms = res.coefficients.set_index("term")["predictor"]
        assert terms["Q('punishment_used')[T.True]"] == "punishment_used"
        assert terms["Q('age_years')"] == "age_years"
        assert terms["Intercept"] == "Intercept"


class TestEvaluate:
    """Tests for batch evaluation across outcomes."""

    def test_results_ordered_by_outcome(self, survey):
        """Test results keep outcome order."""
        report = evaluate(survey, OUTCOMES, PREDICTORS)
        assert list(report.results) == OUTCOMES
        assert report.failures == []
        effects = report.to_frame()
        assert set(effects["outcome"]) == set(OUTCOMES)

    def test_missing_predictor_raises_before_fitting(self, survey):
        """Test schema error for an absent predictor."""
        with pytest.raises(SchemaError) as exc:
            evaluate(survey, OUTCOMES, PREDICTORS + ["not_a_column"])
        assert exc.value.columns == ["not_a_column"]

    def test_missing_outcome_is_recorded(self, survey):
        """Test absent outcome recorded as a failure."""
        report = evaluate(survey, ["aggression", "not_a_column", "fearfulness"], PREDICTORS)
        assert list(report.results) == ["aggression", "fearfulness"]
        assert len(report.failures) == 1
        assert isinstance(report.failures[0], SchemaError)
        assert report.failures[0].outcome == "not_a_column"

    def test_fit_failure_does_not_stop_batch(self, survey):
        """Test remaining outcomes fitted after a failure."""
        df = survey.assign(constant=True)
        report = evaluate(df, ["constant", "aggression"], ["punishment_used"])
        assert "aggression" in report
        assert isinstance(report.failures[0], FitFailure)
        assert list(report.failure_frame()["outcome"]) == ["constant"]

    def test_fits_every_outcome_without_failures(self, survey):
        """Test a full batch fits on the installed statsmodels."""
        report = evaluate(survey, OUTCOMES, PREDICTORS)
        assert report.failures == []
        assert all(not r.coefficients.empty for r in report.results.values())
        assert not report.vif_frame().empty

    def test_perfect_separation_still_returns_result(self, separated_survey):
        """Test separated data returns a result with warnings."""
        report = evaluate(separated_survey, ["y"], ["balanced", "dose"])
        assert report.failures == []
        res = report["y"]
        assert res.predictors == ["balanced", "dose"]
        assert any("PerfectSeparationWarning" in w for w in res.warnings)
        assert len(res.warnings) == len(set(res.warnings))
        assert "Q('dose')" in flag_implausible_estimates(res)

    def test_repeated_outcome_is_recorded(self, survey):
        """Test repeated outcomes recorded as failures."""
        report = evaluate(survey, ["aggression", "fearfulness", "aggression"], PREDICTORS)
        assert list(report.results) == ["aggression", "fearfulness"]
        assert len(report.failures) == 1
        assert isinstance(report.failures[0], SchemaError)
        assert report.failures[0].outcome == "aggression"

    def test_strict_mode_raises(self, survey):
        """Test strict mode re-raises the first failure."""
        df = survey.assign(constant=True)
        with pytest.raises(FitFailure):
            evaluate(df, ["constant"], ["punishment_used"], session_config={"strict_mode": True})

    def test_exclusions_apply_to_named_outcome_only(self, survey):
        """Test exclusions limited to their outcome."""
        report = evaluate(
            survey,
            ["aggression", "fearfulness"],
            PREDICTORS,
            exclusions={"aggression": ["punishment_used"]},
        )
        assert "punishment_used" not in report["aggression"].predictors
        assert "punishment_used" in report["fearfulness"].predictors

    def test_deterministic(self, survey):
        """Test identical input gives identical coefficients."""
        a = evaluate(survey, OUTCOMES, PREDICTORS)
        b = evaluate(survey, OUTCOMES, PREDICTORS)
        pd.testing.assert_frame_equal(a.coefficient_frame(), b.coefficient_frame(), check_exact=True)

    def test_parallel_matches_sequential(self, survey):
        """Test parallel and sequential runs agree."""
        seq = evaluate(survey, OUTCOMES, PREDICTORS, n_jobs=1)
        par = evaluate(survey, OUTCOMES, PREDICTORS, n_jobs=2)
        assert list(par.results) == list(seq.results)
        pd.testing.assert_frame_equal(seq.to_frame(), par.to_frame(), rtol=1e-10)

    def test_threshold_from_session_config(self, survey):
        """Test threshold override from session config."""
        report = evaluate(
            survey, ["aggression"], PREDICTORS, session_config={"min_cell_count": 1000}
        )
        assert report["aggression"].predictors == ["age_years"]

    def test_missing_values_listwise_deleted(self):
        """Test listwise deletion of incomplete rows."""
        df = SyntheticDataGenerator.generate_survey(n_samples=800, missing_rate=0.05)
        report = evaluate(df, OUTCOMES, PREDICTORS)
        assert list(report.results) == OUTCOMES
        assert all(r.n_obs < len(df) for r in report.results.values())
        assert "age_years" in report["aggression"].predictors

    def test_audit_events(self, survey, temp_audit_log):
        """Test audit events for a batch."""
        evaluate(survey, ["aggression", "not_a_column"], PREDICTORS, audit=temp_audit_log)
        events = [
            json.loads(line)["event"]
            for line in temp_audit_log.jsonl_path.read_text().splitlines()
        ]
        assert "SPARSE_COLUMNS_DROPPED" in events
        assert "MODEL_FIT" in events
        assert "MODEL_FIT_FAILED" in events
        assert events[-1] == "EVALUATION_COMPLETE"


class TestMultipleTestingCorrection:
    """Tests for p-value adjustment."""

    def test_known_bh_values(self):
        """Test Benjamini-Hochberg against hand-computed values."""
        result = apply_multiple_testing_correction([0.01, 0.04, 0.03, 0.005])
        np.testing.assert_allclose(result["corrected_p_values"], [0.02, 0.04, 0.04, 0.02])

    def test_bh_monotone_and_not_below_raw(self):
        """Test adjusted p-values are monotone and not below raw."""
        np.random.seed(RANDOM_STATE)
        p = np.random.uniform(0, 0.2, 25)
        adj = np.asarray(apply_multiple_testing_correction(p)["corrected_p_values"])
        order = np.argsort(p)
        assert np.all(np.diff(adj[order]) >= 0)
        assert np.all(adj >= p)
        assert np.all(adj <= 1)

    def test_single_test_is_noop(self):
        """Test a single p-value is unchanged."""
        result = apply_multiple_testing_correction([0.0123])
        assert result["corrected_p_values"] == [0.0123]

    def test_bonferroni_and_holm(self):
        """Test Bonferroni and Holm adjustments."""
        p = [0.01, 0.02, 0.03]
        assert apply_multiple_testing_correction(p, method="bonferroni")[
            "corrected_p_values"
        ] == pytest.approx([0.03, 0.06, 0.09])
        assert apply_multiple_testing_correction(p, method="holm")[
            "corrected_p_values"
        ] == pytest.approx([0.03, 0.04, 0.04])

    def test_empty_and_unknown_method(self):
        """Test empty input and unknown method."""
        assert apply_multiple_testing_correction([])["n_tests"] == 0
        with pytest.raises(ValueError):
            apply_multiple_testing_correction([0.1], method="nope")


class TestTiersAndDirection:
    """Tests for significance tiers and association direction."""

    @pytest.mark.parametrize(
        "p,tier",
        [(0.05, 1), (0.05000001, 0), (0.01, 2), (0.001, 3), (0.0001, 3), (0.5, 0), (float("nan"), 0)],
    )
    def test_tiers(self, p, tier):
        """Test significance tier boundaries."""
        assert significance_tier(p) == tier

    def test_stars(self):
        """Test star labels per tier."""
        assert [tier_stars(t) for t in (0, 1, 2, 3)] == ["", "*", "**", "***"]

    def test_direction(self):
        """Test association direction."""
        assert association_direction(2.0) == "positive"
        assert association_direction(0.5) == "negative"
        assert association_direction(1.0) == "neutral"
        assert association_direction(float("inf")) == "positive"
        assert association_direction(float("nan")) is None
        assert association_direction(-0.3, null_value=0.0) == "negative"


class TestFisherScreening:
    """Tests for Fisher's exact screening of one predictor against many outcomes."""

    def test_two_by_two_matches_scipy(self):
        """Test 2x2 p-value against scipy."""
        table = [[8, 2], [1, 5]]
        p, estimate, method = fisher_exact_test(table)
        _, expected = stats.fisher_exact(table)
        assert p == pytest.approx(expected)
        assert estimate > 1
        assert method == "fisher_exact"

    def test_degenerate_table_raises(self):
        """Test single-row table rejected."""
        with pytest.raises(ValueError):
            fisher_exact_test([[10, 12]])

    def test_monte_carlo_is_seeded(self):
        """Test seeded Monte-Carlo p-value."""
        table = [[10, 5, 8], [3, 12, 9]]
        first = fisher_exact_test(table, n_simulations=500, random_state=7)
        second = fisher_exact_test(table, n_simulations=500, random_state=7)
        assert first[0] == second[0]
        assert 0 < first[0] <= 1
        assert np.isnan(first[1])
        assert first[2] == "fisher_monte_carlo"

    def test_perfect_association(self, identical_pair):
        """Test identical predictor and outcome."""
        report = screen(identical_pair, "X", ["Y"])
        rec = report.records[0]
        assert rec.p_value < 1e-20
        assert rec.effect_estimate > 1
        assert rec.direction == "positive"
        assert rec.adjusted_p_value == rec.p_value
        assert rec.significance_tier == 3
        assert rec.stars == "***"

    def test_missing_outcome_keeps_others(self, identical_pair):
        """Test absent outcome does not drop other records."""
        df = identical_pair.assign(Z=[True, False] * 50)
        report = screen(df, "X", ["Y", "not_a_column", "Z"])
        assert [r.outcome for r in report] == ["Y", "Z"]
        assert isinstance(report.failures[0], SchemaError)
        for r in report:
            assert r.adjusted_p_value >= r.p_value

    def test_degenerate_outcome_is_failure(self, identical_pair):
        """Test constant outcome recorded as a failure."""
        df = identical_pair.assign(constant=True)
        report = screen(df, "X", ["constant", "Y"])
        assert [r.outcome for r in report] == ["Y"]
        assert isinstance(report.failures[0], FitFailure)

    def test_repeated_outcome_is_failure(self, identical_pair):
        """Test repeated outcome recorded as a failure."""
        df = identical_pair.assign(Z=[True, False] * 50)
        report = screen(df, "X", ["Y", "Z", "Y"])
        assert [r.outcome for r in report] == ["Y", "Z"]
        assert len(report.failures) == 1
        assert isinstance(report.failures[0], SchemaError)
        assert report.failures[0].outcome == "Y"

    def test_multilevel_outcome_has_no_direction(self, survey):
        """Test r x c table has no direction."""
        report = screen(survey, "puppy_class", ["acquired_age_group"], n_simulations=500)
        rec = report.records[0]
        assert rec.table_shape == (2, 3)
        assert rec.direction is None

    def test_missing_predictor_raises(self, identical_pair):
        """Test schema error for an absent predictor."""
        with pytest.raises(SchemaError):
            screen(identical_pair, "nope", ["Y"])

    def test_to_frame(self, survey):
        """Test screening table layout."""
        report = screen(survey, "punishment_used", SyntheticDataGenerator.BINARY_OUTCOMES)
        df = report.to_frame()
        assert list(df["outcome"]) == SyntheticDataGenerator.BINARY_OUTCOMES
        assert df.loc[0, "direction"] == "positive"


class TestIO:
    """Tests for reading and typing survey tables."""

    def test_declare_column_types(self):
        """Test declared column types."""
        df = pd.DataFrame(
            {
                "age": [1.0, 2.0, None, 4.0],
                "score": [0.1, 0.2, 0.3, 0.4],
                "trained": ["yes", "no", "yes", "no"],
                "breed": ["lab", "collie", "lab", "pug"],
            }
        )
        out = declare_column_types(
            df, integer_columns=["age"], continuous_columns=["score"], boolean_columns=["trained"]
        )
        assert str(out["age"].dtype) == "Int64"
        assert out["score"].dtype == float
        assert str(out["trained"].dtype) == "boolean"
        assert isinstance(out["breed"].dtype, pd.CategoricalDtype)

    def test_fractional_integer_rejected(self):
        """Test fractional values rejected for integer columns."""
        with pytest.raises(SchemaError):
            declare_column_types(pd.DataFrame({"age": [1.5, 2.0]}), integer_columns=["age"])

    def test_read_tab_separated(self):
        """Test tab delimiter detection."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "survey.tsv"
            path.write_text("a\tb\n1\tx\n2\ty\n")
            df = smart_read_file(path)
            assert list(df.columns) == ["a", "b"]

    def test_pickle_keeps_types(self, survey):
        """Test pickled frames keep dtypes."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "survey.pkl"
            survey.to_pickle(path)
            df = smart_read_file(path)
            pd.testing.assert_series_equal(df.dtypes, survey.dtypes)


class TestAuditLog:
    """Tests for audit logging."""

    def test_audit_log_creation(self):
        """Test audit log creation."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "test_audit.jsonl"
            audit = AuditLog(log_path)
            audit.log("TEST_EVENT", {"key": np.int64(3)})
            summary = audit.finalize_session()

            lines = log_path.read_text().splitlines()
            entries = [json.loads(line) for line in lines]
            assert [e["event"] for e in entries] == ["SESSION_INIT", "TEST_EVENT", "SESSION_FINALIZED"]
            assert [e["log_sequence"] for e in entries] == [1, 2, 3]
            assert entries[1]["details"]["key"] == 3
            assert len(summary["integrity_hash"]) == 64


class TestIntegration:
    """Integration tests for full pipeline."""

    @pytest.mark.slow
    def test_full_pipeline_synthetic(self):
        """Test full pipeline with synthetic data."""
        with tempfile.TemporaryDirectory() as tmpdir:
            tmpdir = Path(tmpdir)
            df = SyntheticDataGenerator.generate_survey(n_samples=600)
            pkl_path = tmpdir / "survey.pkl"
            df.to_pickle(pkl_path)

            result = run_paws_analysis(
                pkl_path,
                tmpdir / "output",
                outcomes=OUTCOMES,
                predictors=PREDICTORS,
                screen_predictor="puppy_class",
            )

            assert result.get("status") == "success"
            assert result["n_models"] == len(OUTCOMES)
            out_dir = Path(result["output_dir"])
            for name in ("model_effects.csv", "model_vif.csv", "dropped_columns.csv", "screening.csv"):
                assert (out_dir / "Tables" / name).exists()
            assert (out_dir / "run_manifest.json").exists()
            assert (out_dir / "PAWS_IMMUTABLE_LOG.jsonl").exists()


# Fixtures for shared test data
@pytest.fixture(scope="module")
def survey():
    """Synthetic owner survey."""
    return SyntheticDataGenerator.generate_survey(n_samples=800)


@pytest.fixture
def small_survey():
    """Hand-built table with one balanced, one rare, one integer and one float column."""
    return pd.DataFrame(
        {
            "y": [True] * 50 + [False] * 50,
            "balanced": ([True] * 25 + [False] * 25) * 2,
            "rare": [True] * 5 + [False] * 95,
            "count": np.arange(100, dtype="int64"),
            "weight": np.linspace(5.0, 40.0, 100),
        }
    )


@pytest.fixture
def separated_survey():
    """Integer predictor that determines the outcome exactly."""
    y = np.array([True] * 40 + [False] * 40)
    return pd.DataFrame(
        {
            "y": y,
            "balanced": [True, False] * 40,
            "dose": (10 * y).astype("int64"),
        }
    )


@pytest.fixture
def identical_pair():
    """Predictor and outcome that agree on every row."""
    x = np.array([True] * 50 + [False] * 50)
    return pd.DataFrame({"X": x, "Y": x.copy()})


@pytest.fixture
def temp_audit_log():
    """Create temporary audit log."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield AuditLog(Path(tmpdir) / "audit.jsonl")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
