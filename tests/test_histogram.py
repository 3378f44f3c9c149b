"""Tests for reproducible gradient histogram building."""

import logging

import numpy as np
import pytest

import reprohist as rh

# Launch shapes with 1, 4 and 256 simulated workers, plus an odd one
WORKER_CONFIGS = [
    rh.HistogramConfig(grid_size=1, block_threads=1),
    rh.HistogramConfig(grid_size=2, block_threads=2),
    rh.HistogramConfig(grid_size=16, block_threads=16),
    rh.HistogramConfig(grid_size=7, block_threads=33),
]


def build(matrix, gpair, ridx, rounding, use_shared=None, config=None):
    hist = rh.allocate_histogram(matrix.n_bins, rounding.dtype, device="cpu")
    rh.build_gradient_histogram(
        matrix, gpair, ridx, hist, rounding, use_shared, config=config
    )
    return hist


@pytest.fixture
def node_rows(random_problem):
    """A node holding a random subset of rows, in random order."""
    matrix, _ = random_problem
    rng = np.random.default_rng(7)
    return rng.choice(matrix.n_rows, size=700, replace=False).astype(np.uint32)


class TestEndToEndScenario:
    """Four cancelling rows in bin 0, one row in bin 1."""

    @pytest.mark.parametrize("dtype", [np.float32, np.float64])
    @pytest.mark.parametrize("use_shared", [True, False])
    @pytest.mark.parametrize("config", WORKER_CONFIGS[:3])
    def test_expected_histogram(self, scenario, dtype, use_shared, config):
        matrix, gpair, ridx = scenario
        rounding = rh.compute_rounding_factor(gpair, dtype)

        hist = build(matrix, gpair, ridx, rounding, use_shared, config)

        np.testing.assert_array_equal(hist, [[0.0, 3.0], [2.0, 2.0]])
        assert hist.dtype == dtype

    def test_default_launch(self, scenario):
        matrix, gpair, ridx = scenario
        rounding = rh.compute_rounding_factor(gpair, np.float64)

        hist = build(matrix, gpair, ridx, rounding)

        np.testing.assert_array_equal(hist, [[0.0, 3.0], [2.0, 2.0]])


class TestOrderIndependence:
    """The result must not depend on how work is split or ordered."""

    @pytest.mark.parametrize("dtype", [np.float32, np.float64])
    def test_work_decomposition(self, random_problem, node_rows, dtype):
        matrix, gpair = random_problem
        rounding = rh.compute_rounding_factor(gpair, dtype)

        results = [
            build(matrix, gpair, node_rows, rounding, use_shared, config)
            for config in WORKER_CONFIGS
            for use_shared in (True, False)
        ]

        for hist in results[1:]:
            np.testing.assert_array_equal(hist, results[0])

    def test_row_permutation(self, random_problem, node_rows):
        matrix, gpair = random_problem
        rounding = rh.compute_rounding_factor(gpair, np.float32)
        rng = np.random.default_rng(11)

        expected = build(matrix, gpair, np.sort(node_rows), rounding)
        for _ in range(3):
            permuted = rng.permutation(node_rows)
            np.testing.assert_array_equal(
                build(matrix, gpair, permuted, rounding), expected
            )

    def test_matches_sequential_reference(self, random_problem, node_rows, reference):
        matrix, gpair = random_problem
        rounding = rh.compute_rounding_factor(gpair, np.float32)

        hist = build(matrix, gpair, node_rows, rounding)

        np.testing.assert_array_equal(hist, reference(matrix, gpair, node_rows, rounding))

    def test_close_to_exact_sums(self, random_problem, node_rows):
        """Truncation error stays within the grid resolution."""
        matrix, gpair = random_problem
        rounding = rh.compute_rounding_factor(gpair, np.float64)

        hist = build(matrix, gpair, node_rows, rounding)

        exact = np.zeros_like(hist)
        gidx = matrix.gidx[node_rows]
        for j in range(matrix.row_stride):
            bins = gidx[:, j].astype(np.int64)
            keep = bins != matrix.n_bins
            np.add.at(exact, bins[keep], gpair[node_rows[keep]].astype(np.float64))

        eps = np.finfo(np.float64).eps
        atol = max(rounding) * eps * len(node_rows)
        np.testing.assert_allclose(hist, exact, rtol=0, atol=atol)


class TestStagingEquivalence:
    """Staged and direct accumulation agree bit for bit."""

    @pytest.mark.parametrize("config", WORKER_CONFIGS)
    def test_staged_equals_direct(self, random_problem, node_rows, config):
        matrix, gpair = random_problem
        rounding = rh.compute_rounding_factor(gpair, np.float32)

        staged = build(matrix, gpair, node_rows, rounding, True, config)
        direct = build(matrix, gpair, node_rows, rounding, False, config)

        np.testing.assert_array_equal(staged, direct)

    def test_fallback_matches_reference(self, reference):
        """A histogram too large to stage is built directly, same result."""
        rng = np.random.default_rng(12)
        n_rows, n_bins = 3000, 5000
        gidx = rng.integers(0, n_bins + 1, size=(n_rows, 4)).astype(np.uint32)
        matrix = rh.EllpackMatrix(gidx=gidx, n_bins=n_bins)
        gpair = rh.gradient_pairs(rng.standard_normal(n_rows), rng.random(n_rows))
        ridx = np.arange(n_rows, dtype=np.uint32)
        rounding = rh.compute_rounding_factor(gpair, np.float64)

        builder = rh.HistogramBuilder()
        assert not builder.use_shared_memory(n_bins, np.float64)

        hist = rh.allocate_histogram(n_bins, np.float64, device="cpu")
        params = builder.build(matrix, gpair, ridx, hist, rounding)

        assert not params.use_shared
        np.testing.assert_array_equal(hist, reference(matrix, gpair, ridx, rounding))


class TestCpuDirectAccumulation:
    """Direct builds on CPU run in parallel over worker-local buffers."""

    @pytest.fixture
    def wide_problem(self):
        """A float64 histogram too large to stage (more than 3072 bins)."""
        rng = np.random.default_rng(21)
        n_rows, n_bins = 5000, 4000
        gidx = rng.integers(0, n_bins + 1, size=(n_rows, 3)).astype(np.uint32)
        matrix = rh.EllpackMatrix(gidx=gidx, n_bins=n_bins)
        gpair = rh.gradient_pairs(rng.standard_normal(n_rows), rng.random(n_rows))
        ridx = rng.permutation(n_rows).astype(np.uint32)
        rounding = rh.compute_rounding_factor(gpair, np.float64)
        return matrix, gpair, ridx, rounding

    def test_direct_kernel_is_parallel(self):
        from reprohist._backends import _cpu

        assert _cpu._build_histogram_direct.targetoptions.get("parallel")
        assert _cpu._merge_partials.targetoptions.get("parallel")

    def test_wide_histogram_uses_parallel_kernel(self, wide_problem, reference, monkeypatch):
        from reprohist._backends import _cpu

        matrix, gpair, ridx, rounding = wide_problem
        calls = []
        kernel = _cpu._build_histogram_direct

        def spy(*args):
            calls.append(args[-1].shape)
            return kernel(*args)

        monkeypatch.setattr(_cpu, "_build_histogram_direct", spy)

        hist = rh.allocate_histogram(matrix.n_bins, np.float64, device="cpu")
        params = rh.HistogramBuilder().build(matrix, gpair, ridx, hist, rounding)

        assert not params.use_shared
        assert calls == [(_cpu.direct_workers(params.grid_size), matrix.n_bins, 2)]
        np.testing.assert_array_equal(hist, reference(matrix, gpair, ridx, rounding))

    def test_thread_count_independent(self, wide_problem):
        import numba

        matrix, gpair, ridx, rounding = wide_problem
        config = rh.HistogramConfig(grid_size=16, block_threads=32)

        default = build(matrix, gpair, ridx, rounding, False, config)
        original = numba.get_num_threads()
        try:
            numba.set_num_threads(1)
            single = build(matrix, gpair, ridx, rounding, False, config)
        finally:
            numba.set_num_threads(original)

        np.testing.assert_array_equal(single, default)

    def test_direct_workers_bounded(self):
        from reprohist._backends import _cpu

        assert _cpu.direct_workers(1) == 1
        assert 1 <= _cpu.direct_workers(10**6) <= _cpu.max_parallel_blocks()


class TestBinSemantics:
    """Missing values, untouched bins and empty nodes."""

    def test_missing_values_skipped(self):
        gidx = np.array([[0, 3], [3, 1], [3, 3], [2, 0]], dtype=np.uint32)
        matrix = rh.EllpackMatrix(gidx=gidx, n_bins=3)
        gpair = np.array(
            [[1.0, 1.0], [2.0, 1.0], [100.0, 50.0], [-4.0, 1.0]], dtype=np.float64
        )
        rounding = rh.compute_rounding_factor(gpair)

        hist = build(matrix, gpair, np.arange(4, dtype=np.uint32), rounding)

        # Row 2 is entirely missing and contributes nothing
        np.testing.assert_array_equal(hist, [[-3.0, 2.0], [2.0, 1.0], [-4.0, 1.0]])

    def test_untouched_bins_stay_zero(self, random_problem):
        matrix, gpair = random_problem
        rounding = rh.compute_rounding_factor(gpair, np.float32)
        ridx = np.arange(5, dtype=np.uint32)

        hist = build(matrix, gpair, ridx, rounding)

        touched = np.unique(matrix.gidx[ridx])
        touched = touched[touched != matrix.n_bins]
        untouched = np.setdiff1d(np.arange(matrix.n_bins), touched)
        assert len(untouched) > 0
        assert np.all(hist[untouched] == 0.0)
        assert not np.any(np.signbit(hist[untouched]))

    @pytest.mark.parametrize("use_shared", [True, False, None])
    def test_empty_node(self, random_problem, use_shared):
        matrix, gpair = random_problem
        rounding = rh.compute_rounding_factor(gpair, np.float64)
        hist = rh.allocate_histogram(matrix.n_bins, np.float64, device="cpu")

        params = rh.HistogramBuilder().build(
            matrix, gpair, np.array([], dtype=np.uint32), hist, rounding, use_shared
        )

        assert params is None
        assert np.all(hist == 0.0)

    def test_empty_list_of_rows(self, scenario):
        matrix, gpair, _ = scenario
        rounding = rh.compute_rounding_factor(gpair)

        hist = build(matrix, gpair, [], rounding)

        assert np.all(hist == 0.0)

    def test_all_zero_gradients(self, random_problem, node_rows):
        matrix, _ = random_problem
        gpair = np.zeros((matrix.n_rows, 2), dtype=np.float32)
        rounding = rh.compute_rounding_factor(gpair)
        assert rounding == (0.0, 0.0)

        hist = build(matrix, gpair, node_rows, rounding)

        assert np.all(hist == 0.0)

    def test_adds_into_destination(self, scenario):
        """The build accumulates; it does not overwrite."""
        matrix, gpair, ridx = scenario
        rounding = rh.compute_rounding_factor(gpair, np.float64)
        hist = rh.allocate_histogram(2, np.float64, device="cpu")

        rh.build_gradient_histogram(matrix, gpair, ridx, hist, rounding)
        rh.build_gradient_histogram(matrix, gpair, ridx, hist, rounding)

        np.testing.assert_array_equal(hist, [[0.0, 6.0], [4.0, 4.0]])


class TestNodeHistograms:
    """Tests for build_node_histograms() and subtract_histogram()."""

    @pytest.fixture
    def split(self, random_problem):
        matrix, gpair = random_problem
        first_bins = matrix.gidx[:, 0]
        threshold = np.median(first_bins)
        rows = np.arange(matrix.n_rows, dtype=np.uint32)
        return rows, rows[first_bins <= threshold], rows[first_bins > threshold]

    def test_children_sum_to_parent(self, random_problem, split):
        matrix, gpair = random_problem
        root, left, right = split
        rounding = rh.compute_rounding_factor(gpair, np.float32)

        hists = rh.build_node_histograms(
            matrix, gpair, {0: root, 1: left, 2: right}, rounding
        )

        assert set(hists) == {0, 1, 2}
        np.testing.assert_array_equal(hists[1] + hists[2], hists[0])

    def test_subtraction_matches_direct_build(self, random_problem, split):
        matrix, gpair = random_problem
        root, left, right = split
        rounding = rh.compute_rounding_factor(gpair, np.float64)

        hists = rh.build_node_histograms(
            matrix, gpair, {0: root, 1: left, 2: right}, rounding
        )
        sibling = rh.subtract_histogram(hists[0], hists[1])

        np.testing.assert_array_equal(sibling, hists[2])

    def test_subtraction_shape_mismatch(self):
        with pytest.raises(ValueError, match="shapes differ"):
            rh.subtract_histogram(np.zeros((3, 2)), np.zeros((4, 2)))

    def test_subtraction_dtype_mismatch(self):
        with pytest.raises(TypeError, match="dtypes differ"):
            rh.subtract_histogram(
                np.zeros((3, 2), dtype=np.float32), np.zeros((3, 2), dtype=np.float64)
            )


class TestLaunchPlanning:
    """Tests for HistogramBuilder launch decisions."""

    def test_grid_size_from_items_per_thread(self):
        builder = rh.HistogramBuilder(
            rh.HistogramConfig(block_threads=256, items_per_thread=8, max_cpu_blocks=1000)
        )

        assert builder.grid_size(0) == 1
        assert builder.grid_size(1) == 1
        assert builder.grid_size(2048) == 1
        assert builder.grid_size(2049) == 2
        assert builder.grid_size(2048 * 5) == 5

    def test_cpu_grid_is_capped(self):
        builder = rh.HistogramBuilder(rh.HistogramConfig(max_cpu_blocks=3))
        assert builder.grid_size(10**7) == 3

    def test_explicit_grid_size(self):
        builder = rh.HistogramBuilder(rh.HistogramConfig(grid_size=40, max_cpu_blocks=3))
        assert builder.grid_size(10) == 40

    def test_staging_bytes(self):
        assert rh.HistogramBuilder.staging_bytes(100, np.float64) == 1600
        assert rh.HistogramBuilder.staging_bytes(100, np.float32) == 800

    def test_default_cpu_budget(self):
        builder = rh.HistogramBuilder()
        assert builder.shared_memory_budget() == 48 * 1024
        assert builder.use_shared_memory(3072, np.float64)
        assert not builder.use_shared_memory(3073, np.float64)
        assert builder.use_shared_memory(6144, np.float32)

    def test_small_budget_disables_staging(self):
        builder = rh.HistogramBuilder(rh.HistogramConfig(max_shared_memory=100))

        params = builder.launch_params(1000, 10, np.float64)

        assert not params.use_shared
        assert params.shared_bytes == 0

    def test_automatic_staging(self):
        params = rh.HistogramBuilder().launch_params(1000, 10, np.float64)

        assert params.use_shared
        assert params.shared_bytes == 160
        assert params.block_threads == 256
        assert params.n_threads == params.grid_size * 256

    def test_forced_staging_falls_back(self, caplog):
        builder = rh.HistogramBuilder(rh.HistogramConfig(max_shared_memory=100))

        with caplog.at_level(logging.WARNING, logger="reprohist._histogram"):
            params = builder.launch_params(1000, 10, np.float64, use_shared=True)

        assert not params.use_shared
        assert "exceeds" in caplog.text

    def test_forced_direct(self):
        params = rh.HistogramBuilder().launch_params(1000, 10, np.float64, use_shared=False)
        assert not params.use_shared

    def test_build_reports_launch(self, scenario):
        matrix, gpair, ridx = scenario
        rounding = rh.compute_rounding_factor(gpair, np.float64)
        hist = rh.allocate_histogram(2, np.float64, device="cpu")

        params = rh.HistogramBuilder(rh.HistogramConfig(block_threads=4)).build(
            matrix, gpair, ridx, hist, rounding
        )

        assert isinstance(params, rh.LaunchParams)
        assert params.block_threads == 4
        assert params.use_shared

    @pytest.mark.parametrize("kwargs", [
        {"block_threads": 0},
        {"items_per_thread": 0},
        {"grid_size": 0},
        {"max_shared_memory": -1},
        {"max_cpu_blocks": 0},
    ])
    def test_invalid_config(self, kwargs):
        with pytest.raises(ValueError):
            rh.HistogramConfig(**kwargs)


class TestBuildValidation:
    """Bad arguments are rejected before launching anything."""

    def test_histogram_shape(self, scenario):
        matrix, gpair, ridx = scenario
        rounding = rh.compute_rounding_factor(gpair, np.float64)
        with pytest.raises(ValueError, match="shape"):
            rh.build_gradient_histogram(
                matrix, gpair, ridx, np.zeros((3, 2)), rounding
            )

    def test_rounding_dtype_mismatch(self, scenario):
        matrix, gpair, ridx = scenario
        rounding = rh.compute_rounding_factor(gpair, np.float32)
        with pytest.raises(TypeError, match="Rounding factor"):
            rh.build_gradient_histogram(
                matrix, gpair, ridx, np.zeros((2, 2), dtype=np.float64), rounding
            )

    def test_wide_pairs_into_narrow_histogram(self, scenario):
        matrix, gpair, ridx = scenario
        gpair = gpair.astype(np.float64)
        rounding = rh.compute_rounding_factor(gpair, np.float32)
        with pytest.raises(TypeError, match="float64 histogram"):
            rh.build_gradient_histogram(
                matrix, gpair, ridx, np.zeros((2, 2), dtype=np.float32), rounding
            )

    def test_row_ids_out_of_range(self, scenario):
        matrix, gpair, _ = scenario
        rounding = rh.compute_rounding_factor(gpair)
        with pytest.raises(ValueError, match="Row ids"):
            rh.build_gradient_histogram(
                matrix, gpair, np.array([0, 5], dtype=np.uint32),
                np.zeros((2, 2), dtype=np.float32), rounding,
            )

    def test_float_row_ids(self, scenario):
        matrix, gpair, _ = scenario
        rounding = rh.compute_rounding_factor(gpair)
        with pytest.raises(TypeError, match="integer"):
            rh.build_gradient_histogram(
                matrix, gpair, np.array([0.0, 1.0]),
                np.zeros((2, 2), dtype=np.float32), rounding,
            )

    def test_gpair_row_count(self, scenario):
        matrix, gpair, ridx = scenario
        rounding = rh.compute_rounding_factor(gpair)
        with pytest.raises(ValueError, match="rows"):
            rh.build_gradient_histogram(
                matrix, gpair[:3], ridx[:3], np.zeros((2, 2), dtype=np.float32), rounding
            )

    def test_integer_histogram(self, scenario):
        matrix, gpair, ridx = scenario
        rounding = rh.compute_rounding_factor(gpair)
        with pytest.raises(TypeError, match="histogram dtype"):
            rh.build_gradient_histogram(
                matrix, gpair, ridx, np.zeros((2, 2), dtype=np.int64), rounding
            )

    def test_matrix_type(self, scenario):
        _, gpair, ridx = scenario
        rounding = rh.compute_rounding_factor(gpair)
        with pytest.raises(TypeError, match="EllpackMatrix"):
            rh.build_gradient_histogram(
                np.zeros((5, 1), dtype=np.uint32), gpair, ridx,
                np.zeros((2, 2), dtype=np.float32), rounding,
            )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
