"""
Entity descriptors for the SCD Type 2 dimensions.

One descriptor per dimension tells the generic reconciler which field is the
natural key, which attributes are tracked for history, how the derived metric
is computed from the fact table, and where the entity lives in PostgreSQL.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Tuple, Union


@dataclass(frozen=True)
class EntityDescriptor:
    name: str
    natural_key_column: str
    tracked_attributes: Tuple[str, ...]
    # Derived metric: sum of FactRecord.<metric_fact_field> where FactRecord.<fact_key_field> == natural key
    metric_column: str
    fact_key_field: str
    metric_fact_field: str
    # Physical layout
    dimension_table: str
    surrogate_key_column: str
    staging_table: str
    staging_timestamp_column: str = 'updated_at'
    staging_file_column: str = 'load_file_name'

    def tracked_values(self, attributes: Mapping[str, Any]) -> Tuple[Any, ...]:
        return tuple(attributes.get(name) for name in self.tracked_attributes)

    def attributes_equal(self, left: Mapping[str, Any], right: Mapping[str, Any]) -> bool:
        """True when every tracked attribute is equal; untracked keys are ignored."""
        return self.tracked_values(left) == self.tracked_values(right)

    def missing_attributes(self, attributes: Mapping[str, Any]) -> Tuple[str, ...]:
        return tuple(name for name in self.tracked_attributes if name not in attributes)

    def project(self, attributes: Mapping[str, Any]) -> Dict[str, Any]:
        """Copy only the tracked attributes."""
        return {name: attributes.get(name) for name in self.tracked_attributes}


PRODUCT = EntityDescriptor(
    name='product',
    natural_key_column='product_id',
    tracked_attributes=('name', 'category', 'price'),
    metric_column='total_qty_sold',
    fact_key_field='product_id',
    metric_fact_field='quantity',
    dimension_table='dim_product',
    surrogate_key_column='product_sk',
    staging_table='stg_products',
)

CUSTOMER = EntityDescriptor(
    name='customer',
    natural_key_column='customer_id',
    tracked_attributes=('first_name', 'last_name', 'email', 'city'),
    metric_column='total_amt_spent',
    fact_key_field='customer_id',
    metric_fact_field='total_amount',
    dimension_table='dim_customer',
    surrogate_key_column='customer_sk',
    staging_table='stg_customers',
)

ENTITIES = {descriptor.name: descriptor for descriptor in (PRODUCT, CUSTOMER)}


def get_descriptor(entity_type: Union[str, EntityDescriptor]) -> EntityDescriptor:
    """Resolve an entity name ('product', 'customer') or pass a descriptor through."""
    if isinstance(entity_type, EntityDescriptor):
        return entity_type
    try:
        return ENTITIES[str(entity_type).lower()]
    except KeyError:
        raise ValueError(
            f"Unknown entity type {entity_type!r}; expected one of {sorted(ENTITIES)}"
        ) from None
