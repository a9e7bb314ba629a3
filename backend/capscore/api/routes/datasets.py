"""
Dataset and registry endpoints.

Lets clients discover which datasets are installed, which corridors the
freeway data contains, and which features can be weighted.
"""

from pathlib import Path

from fastapi import APIRouter

from capscore.core.config import get_settings
from capscore.models.schemas import default_features
from capscore.services.corridors.corridor_builder import list_corridors
from capscore.services.datasets import FREEWAYS, get_dataset_bundle, read_catalog
from capscore.services.scoring.feature_scorers import FEATURE_SCORERS

router = APIRouter()


@router.get("/datasets")
async def get_datasets():
    """
    List catalogued datasets.

    Returns:
        Catalog entries with whether each file exists in the data directory.
    """
    settings = get_settings()
    data_dir = Path(settings.data_dir)
    catalog = read_catalog(data_dir, settings.catalog_filename)
    return {
        "data_dir": str(data_dir),
        "datasets": [
            {**entry, "available": (data_dir / entry["path"]).exists()}
            for entry in catalog.values()
        ],
    }


@router.get("/corridors")
async def get_corridors():
    """Corridor labels present in the freeway dataset."""
    bundle = get_dataset_bundle()
    if FREEWAYS not in bundle:
        return {"corridors": [], "available": False}
    return {"corridors": list_corridors(bundle[FREEWAYS]), "available": True}


@router.get("/features")
async def get_features():
    """Feature registry with default weights and radii."""
    defaults = default_features()
    return {
        "features": [
            {
                "key": key,
                **scorer.describe(),
                "defaults": defaults[key].model_dump(mode="json") if key in defaults else None,
            }
            for key, scorer in FEATURE_SCORERS.items()
        ]
    }
