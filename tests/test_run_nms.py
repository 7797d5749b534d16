import pytest

from ensemble.flexible_nms.box_utils import Box
from ensemble.flexible_nms.config import NMSConfig
from ensemble.flexible_nms.run_nms import main, process_groups

HEADER = "image_filename,x0,y0,x1,y1,confidence\n"


@pytest.fixture
def sources(tmp_path):
    a = tmp_path / "pass_a.csv"
    a.write_text(HEADER
                 + "img1.jpg,0,0,10,10,0.9\n"
                 + "img1.jpg,100,100,120,120,0.6\n"
                 + "img2.jpg,5,5,25,25,0.7\n")
    b = tmp_path / "pass_b.csv"
    b.write_text(HEADER
                 + "img1.jpg,0,0,10,10,0.8\n"
                 + "img2.jpg,5,5,25,25,0.5\n")
    return [str(a), str(b)]


def run_cli(args, capsys):
    code = main(args + ["--quiet", "--no-color"])
    out = capsys.readouterr().out
    return code, out.splitlines()


def test_end_to_end_stdout(sources, capsys):
    code, lines = run_cli(sources + ["--merge-threshold", "0.5"], capsys)

    assert code == 0
    assert lines == [
        "image_filename,x0,y0,x1,y1,label,confidence",
        "img1.jpg,0.0,0.0,10.0,10.0,car,0.850",
        "img1.jpg,100.0,100.0,120.0,120.0,car,0.300",
        "img2.jpg,5.0,5.0,25.0,25.0,car,0.600",
    ]


def test_output_file_and_ensemble_size(sources, tmp_path, capsys):
    output = tmp_path / "out" / "merged.csv"
    code, lines = run_cli(sources + ["--ensemble-size", "4", "-o", str(output)], capsys)

    assert code == 0
    assert lines == []
    rows = output.read_text().splitlines()
    assert rows[1] == "img1.jpg,0.0,0.0,10.0,10.0,car,0.425"
    assert len(rows) == 4


def test_min_confidence_and_config_file(sources, tmp_path, capsys):
    config_path = tmp_path / "nms.yaml"
    config_path.write_text("flexible_nms:\n  min_confidence: 0.5\n  confidence_precision: 2\n")
    code, lines = run_cli(sources + ["--config", str(config_path)], capsys)

    assert code == 0
    assert lines == [
        "image_filename,x0,y0,x1,y1,label,confidence",
        "img1.jpg,0.0,0.0,10.0,10.0,car,0.85",
        "img2.jpg,5.0,5.0,25.0,25.0,car,0.60",
    ]


def test_output_is_independent_of_source_order_and_workers(sources, capsys):
    _, forward = run_cli(sources, capsys)
    _, backward = run_cli(list(reversed(sources)) + ["--workers", "2"], capsys)
    assert forward == backward


def test_no_sources_is_usage_error(capsys):
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 2
    assert "SOURCE" in capsys.readouterr().err


def test_zero_ensemble_size_is_usage_error(sources, capsys):
    with pytest.raises(SystemExit) as exc:
        main(sources + ["--ensemble-size", "0"])
    assert exc.value.code == 2
    assert "ensemble_size" in capsys.readouterr().err


def test_bad_header_exits_with_error(tmp_path, capsys):
    path = tmp_path / "bad.csv"
    path.write_text("image,x0,y0,x1,y1,confidence\nimg.jpg,0,0,1,1,0.5\n")
    code = main([str(path), "--quiet", "--no-color"])
    captured = capsys.readouterr()
    assert code == 1
    assert captured.out == ""
    assert "image_filename" in captured.err


def test_process_groups_totals():
    groups = {
        "a.jpg": [Box(0, 0, 10, 10, 0.9), Box(0, 0, 10, 10, 0.8)],
        "b.jpg": [Box(0, 0, 10, 10, 0.5)],
        "c.jpg": [],
    }
    totals = process_groups(groups, NMSConfig(ensemble_size=2).validate())
    assert totals == {"boxes": 3, "kept": 2, "merged": 1, "decayed": 0}
    assert groups["a.jpg"][1].dropped
    assert groups["b.jpg"][0].confidence == pytest.approx(0.25)


def test_process_groups_in_worker_processes():
    def build():
        return {
            f"img{i}.jpg": [Box(i, 0, i + 10, 10, 0.9), Box(i + 1, 0, i + 11, 10, 0.7)]
            for i in range(6)
        }

    config = NMSConfig(ensemble_size=2).validate()
    serial, parallel = build(), build()
    process_groups(serial, config)
    process_groups(parallel, config, workers=2)

    for image_id in serial:
        assert serial[image_id] == parallel[image_id]


@pytest.mark.parametrize("text", ["merge_threshold: high\n", "merge_threshold: [0.5\n"])
def test_bad_config_file_is_usage_error(sources, tmp_path, capsys, text):
    config_path = tmp_path / "nms.yaml"
    config_path.write_text(text)
    with pytest.raises(SystemExit) as exc:
        main(sources + ["--config", str(config_path), "--quiet", "--no-color"])
    assert exc.value.code == 2
    captured = capsys.readouterr()
    assert "merge_threshold" in captured.err or "invalid YAML" in captured.err
    assert captured.out == ""


def test_unknown_log_level_is_usage_error(sources, capsys):
    with pytest.raises(SystemExit) as exc:
        main(sources + ["--log-level", "LOUD"])
    assert exc.value.code == 2
    assert "--log-level" in capsys.readouterr().err


def test_log_level_is_case_insensitive(sources, capsys):
    code, lines = run_cli(sources + ["--log-level", "debug"], capsys)
    assert code == 0
    assert lines[0] == "image_filename,x0,y0,x1,y1,label,confidence"


def test_invalid_utf8_source_exits_with_error(tmp_path, capsys):
    path = tmp_path / "bad.csv"
    path.write_bytes(b"image_filename,x0,y0,x1,y1,confidence\nimg\xff.jpg,0,0,1,1,0.5\n")
    code = main([str(path), "--quiet", "--no-color"])
    captured = capsys.readouterr()
    assert code == 1
    assert "UTF-8" in captured.err
