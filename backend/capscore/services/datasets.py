"""
Dataset bundle for freeway cap analysis.

A dataset is a named, immutable collection of geographic features loaded
from GeoJSON. Datasets come either inline from the caller or from the
data directory, indexed by a catalog file:

    [{"key": "freeways", "friendly_name": "Freeway Centerlines",
      "path": "freeways.geojson", "geometry": "LineString"}, ...]

Features keep their raw attribute properties; nothing is normalized here
because the source datasets are tagged inconsistently and each consumer
knows which keys it needs.
"""

import json
import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional

import geopandas as gpd
from shapely.geometry import shape
from shapely.geometry.base import BaseGeometry
from shapely.strtree import STRtree

from capscore.core.config import get_settings
from capscore.utils.geo import LocalProjection

logger = logging.getLogger(__name__)

FREEWAYS = "freeways"

# Every dataset the engine knows how to use
KNOWN_DATASETS = [
    FREEWAYS,
    "cta_rail_stations",
    "metra_stations",
    "amtrak_stations",
    "parks",
    "public_schools",
    "private_schools",
    "colleges_universities",
    "hospitals",
    "landmarks",
    "stadiums",
    "special_service_areas",
    "tif_districts",
    "medical_district",
    "neighborhoods",
    "zoning_districts",
    "bridges",
    "block_groups_with_census",
    "cta_bus_stops",
    "pace_bus_stops",
    "bike_routes",
]


def _clean_value(value: Any) -> Any:
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


@dataclass(frozen=True)
class Feature:
    """A single geographic feature with its attribute properties."""

    geometry: BaseGeometry
    properties: Mapping[str, Any]

    @property
    def kind(self) -> str:
        return self.geometry.geom_type


class Dataset:
    """
    Immutable collection of features with a spatial index.

    The index is built on first query and only narrows candidates by
    bounding box; callers apply the exact predicate themselves so that a
    malformed geometry fails on its own rather than for the whole query.
    """

    def __init__(self, key: str, features: list[Feature]):
        self.key = key
        self._features = tuple(features)
        self._tree: Optional[STRtree] = None

    @classmethod
    def from_geojson(cls, key: str, collection: Mapping[str, Any]) -> "Dataset":
        """
        Build a dataset from a GeoJSON FeatureCollection mapping.

        Features without geometry, or with geometry shapely cannot parse,
        are dropped.
        """
        features = []
        skipped = 0
        for raw in collection.get("features") or []:
            geometry = raw.get("geometry") if raw else None
            if not geometry:
                skipped += 1
                continue
            try:
                geom = shape(geometry)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.debug("Skipping unparseable feature in %s: %s", key, e)
                skipped += 1
                continue
            properties = {k: _clean_value(v) for k, v in (raw.get("properties") or {}).items()}
            features.append(Feature(geometry=geom, properties=MappingProxyType(properties)))

        if skipped:
            logger.warning("Dataset %s: skipped %d features without usable geometry", key, skipped)
        return cls(key, features)

    @classmethod
    def from_file(cls, key: str, path: Path) -> "Dataset":
        """Read a vector file with geopandas, reprojecting to WGS84 if needed."""
        gdf = gpd.read_file(path)
        if gdf.crs is not None and gdf.crs.to_epsg() != 4326:
            gdf = gdf.to_crs(epsg=4326)
        return cls.from_geojson(key, gdf.__geo_interface__)

    @property
    def features(self) -> tuple[Feature, ...]:
        return self._features

    def __len__(self) -> int:
        return len(self._features)

    def __iter__(self) -> Iterator[Feature]:
        return iter(self._features)

    def of_kind(self, *kinds: str) -> list[Feature]:
        """Features whose geometry type is one of `kinds`."""
        return [f for f in self._features if f.kind in kinds]

    def query(self, geometry: BaseGeometry) -> list[Feature]:
        """
        Features whose bounding box intersects that of `geometry`.

        Returned in dataset order.
        """
        if not self._features:
            return []
        if self._tree is None:
            self._tree = STRtree([f.geometry for f in self._features])
        indices = sorted(int(i) for i in self._tree.query(geometry))
        return [self._features[i] for i in indices]

    def project(self, projection: LocalProjection) -> "Dataset":
        """Return a copy with every geometry in the local metric frame."""
        return Dataset(
            self.key,
            [Feature(projection.project(f.geometry), f.properties) for f in self._features],
        )


class DatasetBundle(Mapping[str, Dataset]):
    """Read-only mapping of dataset key to Dataset."""

    def __init__(self, datasets: Mapping[str, Dataset]):
        self._datasets = dict(datasets)

    @classmethod
    def from_geojson(cls, collections: Mapping[str, Mapping[str, Any]]) -> "DatasetBundle":
        return cls({key: Dataset.from_geojson(key, fc) for key, fc in collections.items()})

    def __getitem__(self, key: str) -> Dataset:
        return self._datasets[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._datasets)

    def __len__(self) -> int:
        return len(self._datasets)

    def merged(self, overrides: Mapping[str, Dataset]) -> "DatasetBundle":
        """New bundle with `overrides` replacing same-named datasets."""
        return DatasetBundle({**self._datasets, **overrides})

    def project(self, projection: LocalProjection) -> "DatasetBundle":
        return DatasetBundle({key: ds.project(projection) for key, ds in self._datasets.items()})


def read_catalog(data_dir: Path, catalog_filename: str) -> dict[str, dict]:
    """
    Read the dataset catalog.

    Entries without a path use `<key>.geojson`, as does every known dataset
    when the catalog file is missing or unreadable.

    Returns:
        Mapping of dataset key to catalog entry (first entry per key wins)
    """
    catalog_path = data_dir / catalog_filename
    entries: dict[str, dict] = {}

    try:
        with open(catalog_path, "r", encoding="utf-8") as f:
            catalog = json.load(f)
        for entry in catalog:
            key = entry.get("key")
            if key and key not in entries:
                entries[key] = {**entry, "path": entry.get("path") or f"{key}.geojson"}
        logger.info("Loaded %d datasets from catalog %s", len(entries), catalog_path)
    except (OSError, json.JSONDecodeError, AttributeError) as e:
        logger.warning("Dataset catalog unavailable (%s), using default file names", e)
        entries = {key: {"key": key, "path": f"{key}.geojson"} for key in KNOWN_DATASETS}

    return entries


@lru_cache(maxsize=4)
def load_dataset_bundle(data_dir: str, catalog_filename: str) -> DatasetBundle:
    """
    Load every catalogued dataset the engine uses.

    Datasets are immutable, so the loaded bundle is shared between runs.
    Files that are missing or unreadable are skipped with a warning.
    """
    root = Path(data_dir)
    catalog = read_catalog(root, catalog_filename)
    datasets: dict[str, Dataset] = {}

    for key in KNOWN_DATASETS:
        entry = catalog.get(key)
        if entry is None:
            continue
        try:
            path = root / entry["path"]
            if not path.exists():
                logger.warning("Dataset %s not found at %s", key, path)
                continue
            datasets[key] = Dataset.from_file(key, path)
            logger.info("Loaded dataset %s (%d features)", key, len(datasets[key]))
        except Exception:
            logger.exception("Failed to load dataset %s from %s", key, entry.get("path"))

    return DatasetBundle(datasets)


def get_dataset_bundle() -> DatasetBundle:
    """Load the dataset bundle from the configured data directory."""
    settings = get_settings()
    return load_dataset_bundle(settings.data_dir, settings.catalog_filename)
