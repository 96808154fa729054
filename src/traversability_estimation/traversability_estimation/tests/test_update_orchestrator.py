import threading
from unittest import mock

import numpy as np
import pytest

from conftest import FakeEngine, FakeSource, FakeTransformer, make_grid
from traversability_estimation.errors import SourceCallFailed, TransformUnavailable
from traversability_estimation.filter_config import FilterConfig, load_filter_config
from traversability_estimation.grid_map import ELEVATION_LAYERS
from traversability_estimation.orchestrator import ElevationSourceMode, UpdateOrchestrator
from traversability_estimation.traversability_map import TraversabilityMap


def test_starts_in_remote_pull_not_ready(orchestrator):
    assert orchestrator.mode is ElevationSourceMode.REMOTE_PULL
    assert not orchestrator.engine_ready
    assert orchestrator.last_elevation_grid is None


def test_ready_engine_is_picked_up_at_construction(param, source, transformer):
    engine = FakeEngine()
    engine.ready = True
    orch = UpdateOrchestrator(param, engine, source=source, transformer=transformer)
    assert orch.engine_ready
    assert orch.wait_until_ready(timeout=0.0)


class TestImageElevation:
    def test_first_image_builds_expected_layers(self, orchestrator, engine, elevation_image):
        grid = orchestrator.on_image_elevation(elevation_image, resolution=0.03, height_range=(0.0, 1.0))

        assert orchestrator.mode is ElevationSourceMode.IMAGE_PUSH
        assert set(grid.layers) == {"elevation", "upper_bound", "lower_bound", "uncertainty_range"}
        assert np.all(grid.get("uncertainty_range") == 0.0)
        assert np.allclose(grid.get("uncertainty_range"), grid.get("upper_bound") - grid.get("lower_bound"))
        assert grid.resolution == 0.03
        assert grid.shape == elevation_image.shape
        assert np.nanmax(grid.get("elevation")) == pytest.approx(1.0)

    def test_image_pushes_without_computing(self, orchestrator, engine, elevation_image):
        grid = orchestrator.on_image_elevation(elevation_image)
        assert engine.elevation_map is grid
        assert engine.compute_calls == 0

    def test_every_image_replaces_grid(self, orchestrator, engine, elevation_image):
        first = orchestrator.on_image_elevation(elevation_image, height_range=(0.0, 1.0))
        second = orchestrator.on_image_elevation(elevation_image, height_range=(0.0, 2.0))

        assert first is not second
        assert len(engine.elevation_history) == 2
        assert orchestrator.last_elevation_grid is second
        assert np.nanmax(first.get("elevation")) == pytest.approx(1.0)
        assert np.nanmax(second.get("elevation")) == pytest.approx(2.0)

    def test_image_push_is_sticky(self, orchestrator, engine, source, elevation_image):
        orchestrator.on_image_elevation(elevation_image)
        for _ in range(3):
            assert orchestrator.run_update_cycle()
            assert orchestrator.mode is ElevationSourceMode.IMAGE_PUSH

        assert source.fetch_calls == []
        assert source.reachable_calls == []
        assert engine.compute_calls == 3

    def test_loaded_map_does_not_replace_image_geometry(self, orchestrator, engine, elevation_image):
        orchestrator.on_image_elevation(elevation_image)
        loaded = make_grid()
        assert loaded.shape != elevation_image.shape
        assert orchestrator.load_elevation_map(loaded)
        assert engine.elevation_map is loaded

        grid = orchestrator.on_image_elevation(elevation_image)

        assert grid.shape == elevation_image.shape
        assert engine.elevation_map is grid
        assert orchestrator.image_grid is grid

    def test_image_during_remote_commit_keeps_image_geometry(self, param, transformer, elevation_image):
        engine = FakeEngine(compute_delay=0.1)
        source = FakeSource()
        orch = UpdateOrchestrator(param, engine, source=source, transformer=transformer)
        started = threading.Event()
        original_compute = engine.compute_traversability

        def compute():
            started.set()
            return original_compute()

        engine.compute_traversability = compute
        cycle = threading.Thread(target=orch.run_update_cycle)
        cycle.start()
        assert started.wait(2.0)
        # Blocks until the remote commit releases the engine.
        orch.on_image_elevation(elevation_image)
        cycle.join()

        grid = orch.on_image_elevation(elevation_image)
        assert grid.shape == elevation_image.shape
        assert engine.elevation_map is grid

    def test_concurrent_first_images_initialize_once(self, param, engine, source, transformer, elevation_image):
        logger = mock.Mock()
        orch = UpdateOrchestrator(param, engine, source=source, transformer=transformer, logger=logger)
        n_threads = 12
        barrier = threading.Barrier(n_threads)

        def push():
            barrier.wait()
            orch.on_image_elevation(elevation_image)

        threads = [threading.Thread(target=push) for _ in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        init_logs = [c for c in logger.info.call_args_list if "Initialized map" in c.args[0]]
        assert len(init_logs) == 1
        assert orch.mode is ElevationSourceMode.IMAGE_PUSH
        assert len(engine.elevation_history) == n_threads


class TestRequestSubmap:
    def test_transform_failure_never_calls_source(self, param, engine, source):
        orch = UpdateOrchestrator(param, engine, source=source, transformer=FakeTransformer(fail=True))
        with pytest.raises(TransformUnavailable):
            orch.request_submap()
        assert source.fetch_calls == []

    def test_request_is_anchored_in_map_frame(self, param, engine, source, transformer, orchestrator):
        grid = orchestrator.request_submap()

        assert grid is source.grid
        assert transformer.calls == [((0.0, 0.0, 0.0), "robot", "map")]
        position, length_x, length_y, layers = source.fetch_calls[0]
        assert position == (1.0, 2.0)
        assert (length_x, length_y) == (5.0, 5.0)
        assert layers == ELEVATION_LAYERS

    def test_source_failure_propagates(self, param, engine, transformer):
        orch = UpdateOrchestrator(param, engine, source=FakeSource(fail=True), transformer=transformer)
        with pytest.raises(SourceCallFailed):
            orch.request_submap()

    def test_map_without_elevation_is_rejected(self, param, engine, transformer):
        grid = make_grid()
        grid.erase("elevation")
        orch = UpdateOrchestrator(param, engine, source=FakeSource(grid=grid), transformer=transformer)
        with pytest.raises(SourceCallFailed):
            orch.request_submap()

    def test_missing_bound_layers_are_added(self, param, engine, transformer):
        grid = make_grid()
        grid.erase("upper_bound")
        orch = UpdateOrchestrator(param, engine, source=FakeSource(grid=grid), transformer=transformer)
        result = orch.request_submap()
        assert set(ELEVATION_LAYERS) <= set(result.layers)
        assert np.all(result.get("upper_bound") == 0.0)


class TestRemoteUpdateCycle:
    def test_successful_cycle(self, orchestrator, engine, source):
        assert orchestrator.run_update_cycle()
        assert engine.elevation_map is source.grid
        assert engine.compute_calls == 1
        assert orchestrator.last_elevation_grid is source.grid
        assert orchestrator.engine_ready
        assert source.reachable_calls == [2.0]

    def test_unreachable_source_never_computes(self, param, engine, transformer):
        source = FakeSource(reachable=False)
        orch = UpdateOrchestrator(param, engine, source=source, transformer=transformer)

        assert not orch.run_update_cycle()
        assert engine.compute_calls == 0
        assert engine.elevation_history == []
        assert source.fetch_calls == []

    def test_submap_without_elevation_fails_cycle(self, param, transformer):
        grid = make_grid()
        grid.erase("elevation")
        engine = TraversabilityMap("map")
        orch = UpdateOrchestrator(param, engine, source=FakeSource(grid=grid), transformer=transformer)

        assert not orch.run_update_cycle()
        assert not engine.is_ready()
        assert orch.last_elevation_grid is None

    def test_missing_source_fails(self, param, engine, transformer):
        orch = UpdateOrchestrator(param, engine, source=None, transformer=transformer)
        assert not orch.run_update_cycle()
        assert engine.compute_calls == 0

    def test_transform_failure_fails_cycle(self, param, engine, source):
        orch = UpdateOrchestrator(param, engine, source=source, transformer=FakeTransformer(fail=True))
        assert not orch.run_update_cycle()
        assert engine.compute_calls == 0
        assert engine.elevation_history == []

    def test_call_failure_commits_nothing(self, param, engine, transformer):
        orch = UpdateOrchestrator(param, engine, source=FakeSource(fail=True), transformer=transformer)
        assert not orch.run_update_cycle()
        assert engine.elevation_history == []
        assert engine.compute_calls == 0

    def test_recompute_failure_restores_last_good_input(self, orchestrator, engine, source):
        good = source.grid
        assert orchestrator.run_update_cycle()

        source.grid = make_grid(value=0.7)
        engine.compute_ok = False
        assert not orchestrator.run_update_cycle()

        assert engine.elevation_map is good
        assert orchestrator.last_elevation_grid is good
        # Readiness never reverts.
        assert orchestrator.engine_ready

    def test_image_arriving_mid_cycle_wins(self, param, engine, transformer, elevation_image):
        orch = None

        class ImageDuringFetch(FakeSource):
            def fetch_submap(self, *args, **kwargs):
                grid = super().fetch_submap(*args, **kwargs)
                orch.on_image_elevation(elevation_image)
                return grid

        source = ImageDuringFetch()
        orch = UpdateOrchestrator(param, engine, source=source, transformer=transformer)

        assert orch.run_update_cycle()
        assert orch.mode is ElevationSourceMode.IMAGE_PUSH
        assert engine.elevation_map is orch.last_elevation_grid
        assert engine.elevation_map is not source.grid
        assert engine.compute_calls == 1

    def test_concurrent_triggers_never_compute_in_parallel(self, param, transformer):
        engine = FakeEngine(compute_delay=0.05)
        orch = UpdateOrchestrator(param, engine, source=FakeSource(), transformer=transformer)
        n_threads = 6
        barrier = threading.Barrier(n_threads)
        results = []

        def trigger():
            barrier.wait()
            results.append(orch.run_update_cycle())

        threads = [threading.Thread(target=trigger) for _ in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == [True] * n_threads
        assert engine.max_parallel_computes == 1
        assert 1 <= engine.compute_calls <= n_threads

    def test_coalesced_trigger_shares_failure(self, param, transformer):
        engine = FakeEngine(compute_ok=False, compute_delay=0.05)
        orch = UpdateOrchestrator(param, engine, source=FakeSource(), transformer=transformer)
        results = []
        threads = [threading.Thread(target=lambda: results.append(orch.run_update_cycle())) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results == [False, False, False]
        assert not orch.engine_ready


class TestFilterConfiguration:
    def test_reload_applies_file_config(self, orchestrator, engine, param):
        assert orchestrator.update_filter_configuration()
        assert engine.filter_config == load_filter_config(param.config_directory, param.robot)

    def test_reload_twice_is_idempotent(self, orchestrator, engine):
        assert orchestrator.update_filter_configuration()
        first = engine.filter_config
        assert orchestrator.update_filter_configuration()
        assert engine.filter_config == first

    def test_missing_files_keep_previous_config(self, orchestrator, engine, param):
        before = engine.filter_config
        param.robot = "no_such_robot"
        assert not orchestrator.update_filter_configuration()
        assert engine.filter_config is before

    def test_engine_rejection_fails(self, orchestrator, engine):
        engine.reload_ok = False
        assert not orchestrator.update_filter_configuration()
        assert engine.filter_config == FilterConfig()


class TestLoadElevationMap:
    def test_missing_bound_layers_are_added(self, orchestrator, engine):
        grid = make_grid()
        grid.erase("upper_bound")
        grid.erase("lower_bound")

        assert orchestrator.load_elevation_map(grid)
        assert set(ELEVATION_LAYERS) <= set(engine.elevation_map.layers)
        assert np.all(engine.elevation_map.get("lower_bound") == 0.0)
        assert orchestrator.engine_ready

    def test_map_without_elevation_is_rejected(self, orchestrator, engine):
        grid = make_grid()
        grid.erase("elevation")
        assert not orchestrator.load_elevation_map(grid)
        assert engine.elevation_history == []

    def test_compute_failure_reports_false(self, orchestrator, engine):
        engine.compute_ok = False
        assert not orchestrator.load_elevation_map(make_grid())
        assert not orchestrator.engine_ready
