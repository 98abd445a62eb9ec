"""Tests for the cells-to-parameters chain."""

import pytest
import torch

from trackchain.comparison import Comparator
from trackchain.config import PipelineConfig, SimulationConfig
from trackchain.edm import BoundTrackParameters
from trackchain.pipeline import FullChainAlgorithm, HostFullChain, run_full_chain
from trackchain.simulation import SyntheticEventSource


@pytest.fixture(scope="module")
def simulated():
    """Source with a handful of tracks and their readout cells."""
    return SyntheticEventSource(SimulationConfig(n_vertices=2, tracks_per_vertex=5, random_seed=3))


class TestFullChainAlgorithm:
    """Tests for FullChainAlgorithm and HostFullChain."""

    def test_paths_agree(self, simulated, device):
        """Device and host chains produce equivalent parameters."""
        config = PipelineConfig(accelerator={"device": device.type})
        event = simulated.read_event(0)
        device_params = FullChainAlgorithm(simulated.geometry, config)(event.cells)
        host_params = HostFullChain(simulated.geometry, config)(event.cells)

        assert len(host_params) > 0
        result = Comparator.for_records(BoundTrackParameters, 1e-3).compare(host_params, device_params)
        assert result.match_rate == 1.0
        assert len(device_params) == len(host_params)

    def test_copy_is_independent(self, simulated, device):
        """A copy owns its stream and allocator and gives the same result."""
        config = PipelineConfig(accelerator={"device": device.type})
        chain = FullChainAlgorithm(simulated.geometry, config)
        other = chain.copy()
        assert other.runtime.stream is not chain.runtime.stream
        assert other.runtime.resources.main is not chain.runtime.resources.main

        cells = simulated.read_event(1).cells
        assert other(cells) == chain(cells)
        assert chain.runtime.pool.leased == 0
        assert other.runtime.pool.leased == 0

    def test_no_cells(self, simulated):
        """An event without cells gives no parameters."""
        config = PipelineConfig()
        assert FullChainAlgorithm(simulated.geometry, config)([]) == []
        assert HostFullChain(simulated.geometry, config)([]) == []

    def test_timing(self, simulated):
        """Both chains record their stage timings."""
        chain = FullChainAlgorithm(simulated.geometry, PipelineConfig())
        chain(simulated.read_event(0).cells)
        assert "Clusterization (device)" in chain.timing.labels
        assert "Track params (device)" in chain.timing.labels


class TestRunFullChain:
    """Tests for run_full_chain."""

    def test_run(self):
        """Every event is processed and compared."""
        config = PipelineConfig(
            input={"events": 2},
            simulation={"n_vertices": 1, "tracks_per_vertex": 6},
            runtime={"quiet": True},
        )
        summary = run_full_chain(config)
        assert summary.events == 2
        assert len(summary.results) == 2
        assert summary.host_params == summary.device_params
        assert summary.comparison.match_rate == 1.0
        assert summary.timing.total > 0.0

    @pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")
    def test_run_cuda(self):
        """The CUDA chain agrees with the host chain."""
        config = PipelineConfig(
            accelerator={"device": "cuda"},
            simulation={"n_vertices": 2, "tracks_per_vertex": 6},
            runtime={"quiet": True},
        )
        assert run_full_chain(config).comparison.match_rate == 1.0
