"""Geometry conversion adapter.

The pipeline converts extracted vector data into one simplified GeoJSON
FeatureCollection through a single narrow contract,
``convert(scratch_dir, tolerance_pct, precision) -> ConversionResult``.
Any implementation (CLI tool, native library, remote service) can sit
behind it; the orchestration code never looks past the contract.

The default implementation shells out to the mapshaper CLI:

    $ mapshaper -i a.shp b.shp combine-files -merge-layers force \\
    $    -proj wgs84 -simplify 5% keep-shapes \\
    $    -o converted.geojson format=geojson precision=0.0001

Every tool failure is reported as ConversionError carrying the tool's
message, except a run killed at the stage time limit, which is reported as
StageTimeoutError.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import TYPE_CHECKING, Protocol

from gis_ingest.core import errors
from gis_ingest.services import fetcher
from gis_ingest.utils import commands

if TYPE_CHECKING:
    import pathlib

    from gis_ingest.core import config
    from gis_ingest.db import models as db_models

logger = logging.getLogger(__name__)

OUTPUT_CRS = "EPSG:4326"


@dataclasses.dataclass(frozen=True)
class ConversionResult:
    """Output of a conversion: the collection and its feature count."""

    feature_collection: db_models.GeoJSON
    feature_count: int
    crs: str = OUTPUT_CRS

    def to_bytes(self) -> bytes:
        """Serialize the collection compactly for upload."""
        return json.dumps(
            self.feature_collection,
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")


class ConverterProtocol(Protocol):
    """Contract every conversion implementation fulfils."""

    def convert(
        self,
        scratch_dir: pathlib.Path,
        tolerance_pct: float,
        precision: float,
    ) -> ConversionResult: ...


def parse_feature_collection(text: str) -> ConversionResult:
    """Validate converter output and count its features.

    Raises:
        ConversionError: If the output is not a non-empty FeatureCollection.
    """
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise errors.ConversionError(f"output is not valid JSON: {exc}") from exc
    if not isinstance(document, dict) or document.get("type") != "FeatureCollection":
        raise errors.ConversionError("output is not a GeoJSON FeatureCollection")
    features = document.get("features")
    if not isinstance(features, list) or not features:
        raise errors.ConversionError("conversion produced no features")
    return ConversionResult(feature_collection=document, feature_count=len(features))


class MapshaperConverter(ConverterProtocol):
    """Conversion through the mapshaper command-line tool."""

    OUTPUT_NAME = "converted.geojson"

    def __init__(
        self,
        executable: str = "mapshaper",
        timeout: float | None = None,
    ) -> None:
        self.executable = executable
        self.timeout = timeout

    def build_command(
        self,
        inputs: list[pathlib.Path],
        output: pathlib.Path,
        tolerance_pct: float,
        precision: float,
    ) -> list[str]:
        """Assemble the mapshaper invocation for the given inputs."""
        command = [self.executable, "-i", *(str(path) for path in inputs)]
        if len(inputs) > 1:
            command += ["combine-files", "-merge-layers", "force"]
        if any(path.with_suffix(".prj").exists() for path in inputs):
            command += ["-proj", "wgs84"]
        command += [
            "-simplify",
            f"{tolerance_pct:g}%",
            "keep-shapes",
            "-o",
            str(output),
            "format=geojson",
            f"precision={precision:g}",
        ]
        return command

    def convert(
        self,
        scratch_dir: pathlib.Path,
        tolerance_pct: float,
        precision: float,
    ) -> ConversionResult:
        inputs = fetcher.find_vector_files(scratch_dir)
        if not inputs:
            raise errors.ConversionError("no vector input found in scratch space")

        output = scratch_dir / self.OUTPUT_NAME
        command = self.build_command(inputs, output, tolerance_pct, precision)
        logger.debug("Running %s", " ".join(command))
        try:
            commands.run_command(command, workdir=scratch_dir, timeout=self.timeout)
        except commands.CommandTimeoutError as exc:
            raise errors.StageTimeoutError(
                "convert", exc.timeout, exc.timeout
            ) from exc
        except commands.CommandError as exc:
            raise errors.ConversionError(str(exc)) from exc

        try:
            text = output.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise errors.ConversionError("conversion produced no output file") from exc
        result = parse_feature_collection(text)
        logger.info(
            "Converted %d input file(s) into %d features",
            len(inputs),
            result.feature_count,
        )
        return result


def get_converter(settings: config.Settings) -> ConverterProtocol:
    """Factory function for the configured conversion adapter."""
    return MapshaperConverter(
        executable=settings.mapshaper_bin,
        timeout=settings.stage_timeout_seconds,
    )
