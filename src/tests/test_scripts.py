from types import SimpleNamespace

import run
from activity_cube import ActivityCube, FrameEventSource, IpcRollupStorage, MemoryRollupStorage

from conftest import SAMPLE_EVENTS


def test_run_without_rollup_dir_keeps_rollups_in_memory(tmp_path):
    args = SimpleNamespace(rollup_dir=tmp_path / 'rollups', workers=3)
    settings = run.engine_settings(args)
    assert settings.rollup_dir is None
    assert settings.workers == 3

    cube = ActivityCube(FrameEventSource(SAMPLE_EVENTS), settings=settings)
    assert isinstance(cube.storage, MemoryRollupStorage)
    assert not args.rollup_dir.exists()


def test_run_uses_existing_rollup_dir(tmp_path):
    settings = run.engine_settings(SimpleNamespace(rollup_dir=tmp_path, workers=None))
    assert settings.rollup_dir == tmp_path

    cube = ActivityCube(FrameEventSource(SAMPLE_EVENTS), settings=settings)
    assert isinstance(cube.storage, IpcRollupStorage)
