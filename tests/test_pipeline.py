"""End-to-end tests for the pipeline coordinator."""

import json
from unittest.mock import patch

import pandas as pd
import pytest

from ecoindex.checkpoint import CheckpointStore
from ecoindex.pipeline import PipelineConfig, PipelineCoordinator, PipelineState
from ecoindex.registry import IndexRegistry
from ecoindex.scheduler import BatchScheduler
from ecoindex.types import CheckpointError, PipelineValidationError


def _config(wav_dir, tmp_path, **kw):
    kw.setdefault("n_jobs", 1)
    kw.setdefault("show_progress", False)
    return PipelineConfig(
        directory=wav_dir,
        output_dir=tmp_path / "results",
        log_dir=tmp_path / "log",
        **kw,
    )


def _time_free(df):
    cols = [c for c in df.columns if not c.startswith("time_") and c != "total_processing_time_sec"]
    return df[cols]


def test_range_and_single_index_scenario(wav_dir, tmp_path):
    coord = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["ACI"], file_range=(1, 3)))
    out = coord.run()

    assert coord.state is PipelineState.DONE
    assert out.name.startswith("indices_site_A_1-3_")
    assert out.suffix == ".parquet"
    df = pd.read_parquet(out)
    assert df["filename"].tolist() == ["rec_01.wav", "rec_02.wav", "rec_03.wav"]
    assert (df["status"] == "ok").all()
    assert set(df.columns) == {
        "filename", "duration", "status", "total_processing_time_sec",
        "ACI_left", "ACI_right", "ACI_bymin_left", "ACI_bymin_right", "time_ACI",
    }
    assert df[["ACI_left", "ACI_right"]].notna().all().all()

    # checkpoints are gone, provenance sits next to the artifact
    assert CheckpointStore(tmp_path / "results").batches() == []
    prov = json.loads(out.with_suffix(".parquet.provenance.json").read_text())
    assert prov["indices"] == ["ACI"]
    assert prov["range"] == [1, 3]
    assert prov["rows"] == 3


def test_every_file_contributes_one_record(wav_dir, tmp_path):
    (wav_dir / "rec_99.wav").write_bytes(b"RIFF....garbage")
    coord = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE", "NDSI"], batch_size=2))
    df = pd.read_parquet(coord.run())

    assert len(df) == 6
    assert df["filename"].is_unique
    bad = df.set_index("filename").loc["rec_99.wav"]
    assert bad["status"] == "bad_audio"
    assert pd.isna(bad[["MAE_left", "MAE_right", "NDSI_left", "NDSI_right"]]).all()
    assert (df[df["filename"] != "rec_99.wav"]["status"] == "ok").all()


def test_unknown_index_fails_before_touching_audio(wav_dir, tmp_path):
    coord = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["ACI", "FOO"]))
    with patch("ecoindex.scheduler.load_wav") as load:
        with pytest.raises(PipelineValidationError, match="FOO"):
            coord.run()
    load.assert_not_called()
    assert coord.state is PipelineState.FAILED
    assert not (tmp_path / "results").exists()


def test_empty_directory_fails(tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    coord = PipelineCoordinator(_config(empty, tmp_path))
    with pytest.raises(PipelineValidationError, match="No .wav files"):
        coord.run()


def test_missing_directory_fails(tmp_path):
    coord = PipelineCoordinator(_config(tmp_path / "nowhere", tmp_path))
    with pytest.raises(PipelineValidationError, match="does not exist"):
        coord.run()


@pytest.mark.parametrize("file_range", [(0, 2), (3, 2), (1, 6)])
def test_invalid_range_fails(wav_dir, tmp_path, file_range):
    coord = PipelineCoordinator(_config(wav_dir, tmp_path, file_range=file_range))
    with pytest.raises(PipelineValidationError, match="Invalid range"):
        coord.run()


def test_missing_required_params_fail_validation(wav_dir, tmp_path):
    reg = IndexRegistry()
    reg.register("CUSTOM", lambda x, sr, p: {"": p["k"]}, required_params=("k",))
    coord = PipelineCoordinator(_config(wav_dir, tmp_path), registry=reg)
    with pytest.raises(PipelineValidationError, match="CUSTOM"):
        coord.run()


def test_rerun_is_deterministic_modulo_timing(wav_dir, tmp_path):
    kw = dict(indices=["ACI", "SPECPROP", "NP"], batch_size=2, seed=11)
    first = pd.read_parquet(PipelineCoordinator(_config(wav_dir, tmp_path / "a", **kw)).run())
    second = pd.read_parquet(PipelineCoordinator(_config(wav_dir, tmp_path / "b", **kw)).run())
    pd.testing.assert_frame_equal(_time_free(first), _time_free(second))


def _crash_on_third_batch():
    original = BatchScheduler.run_batch
    calls = {"n": 0}

    def run_batch(self, batch, start_position=0, positions=None):
        calls["n"] += 1
        if calls["n"] == 3:
            raise RuntimeError("node preempted")
        return original(self, batch, start_position, positions)

    return run_batch, calls


def test_merge_only_recovers_completed_batches(wav_dir, tmp_path):
    run_batch, _ = _crash_on_third_batch()
    coord = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"], batch_size=2))
    with patch.object(BatchScheduler, "run_batch", autospec=True, side_effect=run_batch):
        with pytest.raises(RuntimeError, match="preempted"):
            coord.run()
    assert coord.state is PipelineState.FAILED
    store = CheckpointStore(tmp_path / "results")
    assert store.batches() == [1, 2]

    recovered = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"], merge_only=True))
    df = pd.read_parquet(recovered.run())
    assert df["filename"].tolist() == [f"rec_0{i}.wav" for i in range(1, 5)]
    assert store.batches() == []


def test_resume_skips_checkpointed_batches(wav_dir, tmp_path):
    run_batch, _ = _crash_on_third_batch()
    with patch.object(BatchScheduler, "run_batch", autospec=True, side_effect=run_batch):
        with pytest.raises(RuntimeError):
            PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"], batch_size=2)).run()

    original = BatchScheduler.run_batch
    with patch.object(BatchScheduler, "run_batch", autospec=True, side_effect=original) as spy:
        df = pd.read_parquet(
            PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"], batch_size=2, resume=True)).run()
        )
    assert spy.call_count == 1
    assert len(df) == 5
    assert df["filename"].is_unique


def test_resume_with_other_batch_size_covers_every_file(wav_dir, tmp_path):
    run_batch, _ = _crash_on_third_batch()
    with patch.object(BatchScheduler, "run_batch", autospec=True, side_effect=run_batch):
        with pytest.raises(RuntimeError):
            PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"], batch_size=2, seed=3)).run()
    store = CheckpointStore(tmp_path / "results")
    assert store.batches() == [1, 2]

    original = BatchScheduler.run_batch
    coord = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"], batch_size=3, seed=3, resume=True))
    coord.validate()
    with patch.object(BatchScheduler, "run_batch", autospec=True, side_effect=original) as spy:
        assert coord.process_batches() == [3]
    assert [p.name for p in spy.call_args.args[1]] == ["rec_05.wav"]
    assert spy.call_args.kwargs["positions"] == [4]
    assert store.batches() == [1, 2, 3]

    resumed = pd.read_parquet(coord.merge())
    assert resumed["filename"].tolist() == [f"rec_0{i}.wav" for i in range(1, 6)]
    assert (resumed["status"] == "ok").all()

    fresh = pd.read_parquet(
        PipelineCoordinator(_config(wav_dir, tmp_path / "fresh", indices=["MAE"], seed=3)).run()
    )
    pd.testing.assert_frame_equal(_time_free(resumed), _time_free(fresh))


def test_validation_removes_interrupted_partition_writes(wav_dir, tmp_path):
    results = tmp_path / "results"
    results.mkdir()
    (results / ".batch=00001.x7q2.tmp").write_bytes(b"partial")
    out = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"])).run()
    assert sorted(p.name for p in results.iterdir()) == [out.name, out.name + ".provenance.json"]


def test_merge_rejects_duplicate_filenames(wav_dir, tmp_path):
    store = CheckpointStore(tmp_path / "results")
    store.write(1, [{"filename": "rec_01.wav", "status": "ok"}])
    store.write(2, [{"filename": "rec_01.wav", "status": "ok"}])
    coord = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"], merge_only=True))
    with pytest.raises(CheckpointError, match="duplicate.*rec_01.wav"):
        coord.run()
    assert store.batches() == [1, 2]


def test_merge_with_missing_partition_keeps_checkpoints(wav_dir, tmp_path):
    coord = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"], batch_size=2))
    coord.validate()
    assert coord.process_batches() == [1, 2, 3]
    coord.store.cleanup([2])
    with pytest.raises(CheckpointError, match="3 records for 5 input files"):
        coord.merge()
    assert coord.store.batches() == [1, 3]
    assert not list((tmp_path / "results").glob("indices_*"))


@pytest.mark.parametrize("output_format,writer", [("parquet", "to_parquet"), ("csv", "to_csv")])
def test_failed_final_write_keeps_checkpoints(wav_dir, tmp_path, output_format, writer):
    coord = PipelineCoordinator(
        _config(wav_dir, tmp_path, indices=["MAE"], batch_size=2, output_format=output_format)
    )
    coord.validate()
    coord.process_batches()
    with patch(f"pandas.DataFrame.{writer}", side_effect=OSError("disk full")):
        with pytest.raises(OSError, match="disk full"):
            coord.merge()
    assert coord.store.batches() == [1, 2, 3]


def test_leftover_checkpoints_block_a_fresh_run(wav_dir, tmp_path):
    CheckpointStore(tmp_path / "results").write(1, [{"filename": "old.wav", "status": "ok"}])
    coord = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"]))
    with pytest.raises(PipelineValidationError, match="--resume"):
        coord.run()


def test_merge_only_without_checkpoints_fails(wav_dir, tmp_path):
    coord = PipelineCoordinator(_config(wav_dir, tmp_path, merge_only=True))
    with pytest.raises(CheckpointError, match="No checkpoints"):
        coord.run()


def test_csv_output_and_log_streams(wav_dir, tmp_path):
    out = PipelineCoordinator(_config(wav_dir, tmp_path, indices=["MAE"], output_format="csv")).run()
    assert out.suffix == ".csv"
    assert len(pd.read_csv(out)) == 5

    log_dir = tmp_path / "log"
    pipeline_log = (log_dir / "log_pipeline.txt").read_text()
    assert "INIT -> VALIDATING" in pipeline_log
    assert "VALIDATING -> BATCHING" in pipeline_log
    assert "BATCHING -> MERGING" in pipeline_log
    assert "MERGING -> DONE" in pipeline_log
    assert "Reading file" in (log_dir / "log_audio_load.txt").read_text()
    assert (log_dir / "log_index_calc.txt").exists()
