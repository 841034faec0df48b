import os

import ffmpeg
import pytest
from PIL import Image

from stefna.errors import CompositionError
from stefna.pipeline.compositor import Compositor

from .conftest import write_output


@pytest.fixture
def shots(tmp_path):
    paths = []
    for i, color in enumerate([(255, 0, 0), (0, 255, 0), (0, 0, 255), (255, 255, 0)]):
        path = tmp_path / f"in_{i}.png"
        Image.new("RGB", (40, 30), color).save(path)
        paths.append(str(path))
    return paths


@pytest.fixture
def scratch(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return path


def test_graph_chains_zoompan_and_crossfades(shots, scratch, tmp_path):
    captured = []

    def runner(stream):
        captured.append(stream.get_args())
        write_output(stream)

    out = str(tmp_path / "story.mp4")
    Compositor(runner=runner, temp_root=str(scratch)).compose(shots, 512, 512, 24, out)

    args = captured[0]
    graph = args[args.index("-filter_complex") + 1]
    assert graph.count("zoompan") == 4
    assert graph.count("xfade") == 3
    assert "offset=2.2" in graph and "offset=4.4" in graph and "offset=6.6" in graph
    assert args[args.index("-movflags") + 1] == "+faststart"
    assert args[-1] == out
    assert os.path.getsize(out) > 0


def test_transition_offsets():
    assert Compositor().transition_offsets(4) == [2.2, 4.4, 6.6]
    assert Compositor().transition_offsets(1) == []


def test_fewer_shots_than_expected_fails_loudly(shots, scratch, tmp_path):
    compositor = Compositor(runner=write_output, temp_root=str(scratch))

    with pytest.raises(CompositionError, match="needs 4 shots, got 3"):
        compositor.compose(shots[:3], 256, 256, 24, str(tmp_path / "o.mp4"), expected_shots=4)


def test_no_shots(scratch, tmp_path):
    with pytest.raises(CompositionError):
        Compositor(runner=write_output, temp_root=str(scratch)).compose([], 256, 256, 24, str(tmp_path / "o.mp4"))


def test_intermediates_removed_after_success(shots, scratch, tmp_path):
    Compositor(runner=write_output, temp_root=str(scratch)).compose(shots, 256, 256, 24, str(tmp_path / "o.mp4"))
    assert os.listdir(scratch) == []


def test_intermediates_removed_when_ffmpeg_fails(shots, scratch, tmp_path):
    def runner(stream):
        raise ffmpeg.Error("ffmpeg", b"", b"Invalid argument for xfade")

    with pytest.raises(CompositionError, match="Invalid argument"):
        Compositor(runner=runner, temp_root=str(scratch)).compose(shots, 256, 256, 24, str(tmp_path / "o.mp4"))
    assert os.listdir(scratch) == []


def test_unreadable_shot(shots, scratch, tmp_path):
    broken = tmp_path / "broken.png"
    broken.write_bytes(b"not an image")

    with pytest.raises(CompositionError, match="broken.png"):
        Compositor(runner=write_output, temp_root=str(scratch)).compose(
            shots[:3] + [str(broken)], 256, 256, 24, str(tmp_path / "o.mp4"),
        )
    assert os.listdir(scratch) == []


def test_missing_output_is_a_failure(shots, scratch, tmp_path):
    with pytest.raises(CompositionError, match="no output"):
        Compositor(runner=lambda stream: None, temp_root=str(scratch)).compose(
            shots, 256, 256, 24, str(tmp_path / "o.mp4"),
        )
