"""Tests for the mapshaper conversion adapter.

``run_command`` is monkeypatched so the tests neither need mapshaper nor
spawn processes; the fake writes the output file the tool would produce.
"""

from __future__ import annotations

import json
import pathlib

import pytest

import helpers

from gis_ingest.core import config, errors
from gis_ingest.services import converter as conv
from gis_ingest.utils import commands


def _scratch_with(tmp_path: pathlib.Path, *names: str) -> pathlib.Path:
    scratch = tmp_path / "job"
    scratch.mkdir()
    for name in names:
        (scratch / name).write_bytes(b"")
    return scratch


def test_build_command_single_shapefile(tmp_path: pathlib.Path) -> None:
    scratch = _scratch_with(tmp_path, "phl.shp", "phl.prj")
    converter = conv.MapshaperConverter("mapshaper")
    command = converter.build_command(
        [scratch / "phl.shp"], scratch / "out.geojson", 5.0, 0.0001
    )
    assert command == [
        "mapshaper",
        "-i",
        str(scratch / "phl.shp"),
        "-proj",
        "wgs84",
        "-simplify",
        "5%",
        "keep-shapes",
        "-o",
        str(scratch / "out.geojson"),
        "format=geojson",
        "precision=0.0001",
    ]


def test_build_command_combines_multiple_inputs(tmp_path: pathlib.Path) -> None:
    scratch = _scratch_with(tmp_path, "a.geojson", "b.geojson")
    converter = conv.MapshaperConverter("/opt/bin/mapshaper")
    command = converter.build_command(
        [scratch / "a.geojson", scratch / "b.geojson"],
        scratch / "out.geojson",
        12.5,
        0.001,
    )
    assert command[0] == "/opt/bin/mapshaper"
    assert command[4:7] == ["combine-files", "-merge-layers", "force"]
    assert "-proj" not in command
    assert "12.5%" in command
    assert command[-1] == "precision=0.001"


def test_convert_parses_tool_output(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    scratch = _scratch_with(tmp_path, "phl.shp")
    seen: dict[str, object] = {}

    def fake_run(
        command: list[str],
        workdir: pathlib.Path | None = None,
        timeout: float | None = None,
    ) -> str:
        seen["command"] = command
        seen["timeout"] = timeout
        output = pathlib.Path(command[command.index("-o") + 1])
        output.write_text(json.dumps(helpers.feature_collection(7)))
        return ""

    monkeypatch.setattr(commands, "run_command", fake_run)
    result = conv.MapshaperConverter(timeout=30).convert(scratch, 5.0, 0.0001)
    assert result.feature_count == 7
    assert result.crs == "EPSG:4326"
    assert seen["timeout"] == 30
    assert json.loads(result.to_bytes()) == result.feature_collection


def test_convert_maps_tool_failure(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    scratch = _scratch_with(tmp_path, "phl.shp")

    def fake_run(*args: object, **kwargs: object) -> str:
        raise commands.CommandError("Error: Invalid shapefile header")

    monkeypatch.setattr(commands, "run_command", fake_run)
    with pytest.raises(errors.ConversionError, match="Invalid shapefile header"):
        conv.MapshaperConverter().convert(scratch, 5.0, 0.0001)


def test_convert_maps_timeout(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    scratch = _scratch_with(tmp_path, "phl.shp")

    def fake_run(*args: object, **kwargs: object) -> str:
        raise commands.CommandTimeoutError("mapshaper timed out", 30)

    monkeypatch.setattr(commands, "run_command", fake_run)
    with pytest.raises(errors.StageTimeoutError) as info:
        conv.MapshaperConverter(timeout=30).convert(scratch, 5.0, 0.0001)
    assert info.value.stage == "convert"


def test_convert_without_output_file(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    scratch = _scratch_with(tmp_path, "phl.shp")
    monkeypatch.setattr(commands, "run_command", lambda *a, **k: "")
    with pytest.raises(errors.ConversionError, match="no output"):
        conv.MapshaperConverter().convert(scratch, 5.0, 0.0001)


def test_convert_without_inputs(tmp_path: pathlib.Path) -> None:
    scratch = _scratch_with(tmp_path, "readme.txt")
    with pytest.raises(errors.ConversionError):
        conv.MapshaperConverter().convert(scratch, 5.0, 0.0001)


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        json.dumps({"type": "Topology"}),
        json.dumps({"type": "FeatureCollection", "features": []}),
    ],
)
def test_parse_feature_collection_rejects(text: str) -> None:
    with pytest.raises(errors.ConversionError):
        conv.parse_feature_collection(text)


def test_get_converter_uses_settings() -> None:
    settings = config.Settings(
        _env_file=None,
        mapshaper_bin="/usr/local/bin/mapshaper",
        stage_timeout_seconds=120,
    )
    converter = conv.get_converter(settings)
    assert isinstance(converter, conv.MapshaperConverter)
    assert converter.executable == "/usr/local/bin/mapshaper"
    assert converter.timeout == 120
