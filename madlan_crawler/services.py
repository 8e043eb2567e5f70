# madlan_crawler/services.py
from .crud import Repositories
from .errors import ExtractionError, PersistenceError, StorageError
from .schemas import PropertyBundle
from .utils import logger
from .validators import completeness, has_minimum_data, sanitize_property, validate_property


def prepare_bundle(bundle: PropertyBundle) -> PropertyBundle:
    """Sanitize and validate; raises ExtractionError if the page is unusable."""
    prop = sanitize_property(bundle.property)
    if not has_minimum_data(prop):
        raise ExtractionError(f"insufficient data for {prop.url or prop.id}")
    issues = validate_property(prop)
    if issues:
        raise ExtractionError("; ".join(f"{i.field}: {i.message}" for i in issues))
    return bundle.model_copy(update={"property": prop})


async def ingest_property(repos: Repositories, bundle: PropertyBundle) -> bool:
    """Write a property and replace all of its child sets atomically.

    Returns True when the property was seen for the first time.
    """
    prop = bundle.property

    async def work():
        is_new = await repos.properties.upsert(prop)
        await repos.images.replace(prop.id, bundle.images)
        await repos.transactions.replace(prop.id, bundle.transactions)
        await repos.schools.replace(prop.id, bundle.schools)
        if bundle.ratings is not None:
            await repos.ratings.upsert(prop.id, bundle.ratings)
        else:
            await repos.ratings.delete_by_property_id(prop.id)
        await repos.price_comparisons.replace(prop.id, bundle.price_comparisons)
        await repos.construction_projects.replace(prop.id, bundle.construction_projects)
        return is_new

    try:
        is_new = await repos.storage.transaction(work)
    except StorageError as e:
        raise PersistenceError(f"saving property {prop.id} failed: {e}") from e
    logger.info("Ingested property %s (%s, %d%% complete)", prop.id,
                "new" if is_new else "updated", completeness(prop))
    return is_new
