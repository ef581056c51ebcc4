"""Builders and fakes shared by the test modules."""

from __future__ import annotations

import io
import zipfile
from typing import TYPE_CHECKING, Any

from gis_ingest.services import converter as conv
from gis_ingest.services import fetcher

if TYPE_CHECKING:
    import pathlib


def feature_collection(count: int, level: int = 2) -> dict[str, Any]:
    """Build a FeatureCollection of ``count`` small square polygons."""
    features = []
    for index in range(count):
        x = float(index % 100)
        y = float(index // 100)
        features.append(
            {
                "type": "Feature",
                "properties": {
                    f"ADM{level}_PCODE": f"PH{index:05d}",
                    f"ADM{level}_EN": f"Area {index}",
                },
                "geometry": {
                    "type": "Polygon",
                    "coordinates": [
                        [[x, y], [x + 1, y], [x + 1, y + 1], [x, y + 1], [x, y]]
                    ],
                },
            }
        )
    return {"type": "FeatureCollection", "features": features}


def zip_bytes(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def shapefile_zip(stem: str = "phl_adm2") -> bytes:
    """A zip holding a (content-free) shapefile set."""
    return zip_bytes(
        {
            f"{stem}.shp": b"\x00\x00\x27\x0a shp",
            f"{stem}.shx": b"\x00\x00\x27\x0a shx",
            f"{stem}.dbf": b"\x03 dbf",
            f"{stem}.prj": b'GEOGCS["GCS_WGS_1984"]',
        }
    )


class FakeConverter(conv.ConverterProtocol):
    """Converter returning a prepared collection or raising a prepared error.

    Records the scratch directories and vector inputs it was handed.
    """

    def __init__(self, collection: dict[str, Any] | None = None) -> None:
        self.collection = collection or feature_collection(3)
        self.error: Exception | None = None
        self.calls: list[pathlib.Path] = []
        self.inputs: list[list[pathlib.Path]] = []

    def convert(
        self,
        scratch_dir: pathlib.Path,
        tolerance_pct: float,
        precision: float,
    ) -> conv.ConversionResult:
        self.calls.append(scratch_dir)
        self.inputs.append(fetcher.find_vector_files(scratch_dir))
        if self.error is not None:
            raise self.error
        return conv.ConversionResult(
            feature_collection=self.collection,
            feature_count=len(self.collection["features"]),
        )


class RecordingSleep:
    """Sleep replacement recording requested delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
