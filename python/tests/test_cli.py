"""Tests for the humwitness CLI."""

import json

import pytest

from humwitness.cli import aggregate_command, compare_command, extract_command, keys_command, main


class _Args:
    """Minimal args namespace for testing CLI functions."""

    def __init__(self, **kwargs):
        self.config = None
        self.verbose = False
        for k, v in kwargs.items():
            setattr(self, k, v)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep user config files and HUMWITNESS_* variables out of CLI runs."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in ("HUMWITNESS_CONFIG", "HUMWITNESS_MIN_PEERS", "HUMWITNESS_OUTLIER_THRESHOLD",
                 "HUMWITNESS_REQUEST_TIMEOUT", "HUMWITNESS_MIN_DURATION",
                 "HUMWITNESS_TRANSPORTS", "HUMWITNESS_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def recording(tmp_path, hum, wav):
    def _write(name, **kwargs):
        path = tmp_path / name
        path.write_bytes(wav(hum(**kwargs)))
        return path
    return _write


def _write_reports(path, reports, wrapped=False):
    items = [r.to_dict() for r in reports]
    path.write_text(json.dumps({"reports": items} if wrapped else items))
    return path


class TestExtractCommand:
    def test_extract_json(self, recording, capsys):
        path = recording("event.wav", noise_seed=1)
        extract_command(_Args(file=str(path), output=None, json=True))

        output = json.loads(capsys.readouterr().out)
        assert output["mainsFrequency"] == 60
        assert len(output["hash"]) == 64
        assert len(output["vector"]) > 100

    def test_extract_writes_output(self, recording, tmp_path, capsys):
        path = recording("event.wav", noise_seed=1)
        out = tmp_path / "event.json"
        extract_command(_Args(file=str(path), output=str(out), json=False))

        assert "Mains-Hum Fingerprint" in capsys.readouterr().out
        assert json.loads(out.read_text())["sampleRate"] == 44100

    def test_extract_too_short(self, recording, capsys):
        path = recording("short.wav", duration=2.0, noise_seed=1)
        with pytest.raises(SystemExit) as exc:
            extract_command(_Args(file=str(path), output=None, json=True))
        assert exc.value.code == 1
        assert "at least" in capsys.readouterr().err

    def test_extract_missing_file(self, capsys):
        with pytest.raises(SystemExit) as exc:
            extract_command(_Args(file="/nonexistent/file.wav", output=None, json=False))
        assert exc.value.code == 1
        assert "File not found" in capsys.readouterr().err


class TestCompareCommand:
    def test_compare_colocated_wavs(self, recording, capsys):
        first = recording("a.wav", noise_seed=1)
        second = recording("b.wav", noise_seed=2)
        compare_command(_Args(first=str(first), second=str(second), json=True))

        output = json.loads(capsys.readouterr().out)
        assert output["similarity"] >= 0.85
        assert output["proximityEstimate"] == "same_location"
        assert set(output) == {"similarity", "correlation", "confidence", "timeOffset",
                               "proximityEstimate"}

    def test_compare_with_fingerprint_json(self, recording, tmp_path, event_fingerprint, capsys):
        stored = tmp_path / "event.json"
        stored.write_text(json.dumps(event_fingerprint.to_dict()))
        other = recording("b.wav", noise_seed=2)
        compare_command(_Args(first=str(stored), second=str(other), json=False))

        out = capsys.readouterr().out
        assert "Similarity:" in out
        assert "Proximity: same_location" in out


class TestAggregateCommand:
    def test_aggregate_json(self, tmp_path, make_report, capsys):
        path = _write_reports(tmp_path / "reports.json",
                              [make_report(s) for s in (0.95, 0.94, 0.96, 0.05, 0.97)])
        with pytest.raises(SystemExit) as exc:
            aggregate_command(_Args(file=str(path), min_peers=None, threshold=None,
                                    no_verify=False, json=True))
        assert exc.value.code == 0

        output = json.loads(capsys.readouterr().out)
        assert output["aggregation"]["outlierCount"] == 1
        assert output["aggregation"]["aggregatedScore"] == pytest.approx(0.955)
        assert output["tamperingLikely"] is False

    def test_aggregate_text_report(self, tmp_path, make_report, capsys):
        path = _write_reports(tmp_path / "reports.json",
                              [make_report(0.9) for _ in range(3)], wrapped=True)
        with pytest.raises(SystemExit) as exc:
            aggregate_command(_Args(file=str(path), min_peers=None, threshold=None,
                                    no_verify=False, json=False))
        assert exc.value.code == 0
        assert "=== Tamper Detection Report ===" in capsys.readouterr().out

    def test_aggregate_tampered_exits_nonzero(self, tmp_path, make_report, capsys):
        path = _write_reports(tmp_path / "reports.json",
                              [make_report(s) for s in (0.1, 0.1, 0.15)])
        with pytest.raises(SystemExit) as exc:
            aggregate_command(_Args(file=str(path), min_peers=None, threshold=None,
                                    no_verify=False, json=True))
        assert exc.value.code == 1
        assert json.loads(capsys.readouterr().out)["tamperingLikely"] is True

    def test_aggregate_insufficient(self, tmp_path, make_report, capsys):
        path = _write_reports(tmp_path / "reports.json", [make_report(0.9)])
        with pytest.raises(SystemExit) as exc:
            aggregate_command(_Args(file=str(path), min_peers=None, threshold=None,
                                    no_verify=False, json=True))
        assert exc.value.code == 2
        assert "Insufficient peer reports: 1 < 3" in capsys.readouterr().err

    def test_aggregate_min_peers_override(self, tmp_path, make_report, capsys):
        path = _write_reports(tmp_path / "reports.json", [make_report(0.9)])
        with pytest.raises(SystemExit) as exc:
            aggregate_command(_Args(file=str(path), min_peers=1, threshold=None,
                                    no_verify=False, json=True))
        assert exc.value.code == 0
        assert json.loads(capsys.readouterr().out)["aggregation"]["reportCount"] == 1

    def test_aggregate_missing_field(self, tmp_path, make_report, capsys):
        item = make_report(0.9).to_dict()
        del item["signature"]
        path = tmp_path / "reports.json"
        path.write_text(json.dumps([item]))
        with pytest.raises(SystemExit) as exc:
            aggregate_command(_Args(file=str(path), min_peers=None, threshold=None,
                                    no_verify=False, json=True))
        assert exc.value.code == 1
        err = capsys.readouterr().err
        assert err.startswith("Error: Invalid reports file")
        assert "signature" in err

    def test_aggregate_bad_base64(self, tmp_path, make_report, capsys):
        item = make_report(0.9).to_dict()
        item["ephemeralPubKey"] = "not base64!"
        path = tmp_path / "reports.json"
        path.write_text(json.dumps({"reports": [item]}))
        with pytest.raises(SystemExit) as exc:
            aggregate_command(_Args(file=str(path), min_peers=None, threshold=None,
                                    no_verify=False, json=True))
        assert exc.value.code == 1
        assert capsys.readouterr().err.startswith("Error: Invalid reports file")

    def test_aggregate_not_json(self, tmp_path, capsys):
        path = tmp_path / "reports.json"
        path.write_text("{not json")
        with pytest.raises(SystemExit) as exc:
            aggregate_command(_Args(file=str(path), min_peers=None, threshold=None,
                                    no_verify=False, json=True))
        assert exc.value.code == 1
        assert capsys.readouterr().err.startswith("Error: Invalid reports file")


class TestKeysCommand:
    def test_generate_keys(self, tmp_path, capsys):
        keys_command(_Args(generate=True, output=str(tmp_path / "keys")))
        assert "BEGIN PRIVATE KEY" in (tmp_path / "keys" / "private.pem").read_text()
        assert "BEGIN PUBLIC KEY" in (tmp_path / "keys" / "public.pem").read_text()
        assert "Key pair generated successfully" in capsys.readouterr().out

    def test_keys_help(self, capsys):
        keys_command(_Args(generate=False, output="./keys"))
        assert "humwitness keys --generate" in capsys.readouterr().out


class TestMain:
    def test_no_command(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 1

    def test_dispatches_subcommand(self, recording, capsys):
        path = recording("event.wav", noise_seed=1)
        main(["extract", str(path), "--json"])
        assert json.loads(capsys.readouterr().out)["mainsFrequency"] == 60
