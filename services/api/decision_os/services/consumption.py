import logging

from .ingredient_matching import match_inventory_item
from .inventory_model import parse_simple_qty

logger = logging.getLogger("decision_os.ledger")


def consume_meal_inventory(ledger, household_key: str, meal_id: str, now_iso: str) -> int:
    """Charge an approved cook decision against the pantry.

    Staples are never tracked. Returns the number of inventory items touched.
    """
    inventory = ledger.inventory_items(household_key)
    if not inventory:
        return 0

    touched = 0
    for ing in ledger.meal_ingredients([meal_id]):
        if ing.is_pantry_staple:
            continue
        match = match_inventory_item(ing.ingredient_name, inventory)
        if match is None:
            continue
        ledger.record_inventory_usage(match.item, parse_simple_qty(ing.qty_text), now_iso)
        touched += 1

    logger.info(f"Consumed {touched} inventory item(s) for meal {meal_id} ({household_key})")
    return touched
