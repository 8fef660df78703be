from companyos.platform.data.registry import EntityDescriptor, EntityRegistry
from companyos.platform.data.stitch import RelationSpec, StitchedRow, collect_ids, fetch_lookup, stitch

__all__ = [
    "EntityDescriptor",
    "EntityRegistry",
    "RelationSpec",
    "StitchedRow",
    "collect_ids",
    "fetch_lookup",
    "stitch",
]
