import json
import unittest

from app.contexts.erp.domain.contracts import ExternalRecord, normalize_modified_at
from app.contexts.erp.domain.gateway import ErpValidationError
from app.contexts.erp.infrastructure.mappers import map_category, map_contact, map_item
from tests.helpers.fakes import make_contact, make_item


def _record(kind: str, payload: dict) -> ExternalRecord:
    id_field = {"items": "item_id", "contacts": "contact_id"}[kind]
    return ExternalRecord.from_payload(kind, payload, id_field)


class CatalogMapperTest(unittest.TestCase):
    def test_category_keywords(self) -> None:
        self.assertEqual(map_category("Sunglasses"), "sunglasses")
        self.assertEqual(map_category("Phone Accessories"), "cellular")
        self.assertEqual(map_category("Hats & Caps"), "caps")
        self.assertEqual(map_category("Fragrance"), "perfumes")
        self.assertEqual(map_category("Seasonal"), "novelty")
        self.assertEqual(map_category(None), "novelty")

    def test_item_maps_erp_owned_columns(self) -> None:
        payload = make_item(
            7,
            custom_fields=[
                {"label": "Tags", "value": "summer, beach"},
                {"label": "Case Pack Size", "value": "12"},
            ],
            cf_compare_at_price="24.50",
        )
        mapped = map_item(_record("items", payload))

        self.assertEqual(mapped["external_id"], "I-007")
        self.assertEqual(mapped["category"], "sunglasses")
        self.assertEqual(mapped["base_price"], 17.0)
        self.assertEqual(json.loads(mapped["tags"]), ["summer", "beach"])
        self.assertEqual(mapped["case_pack_size"], 12)
        self.assertEqual(mapped["min_order_quantity"], 1)
        self.assertEqual(mapped["compare_at_price"], 24.5)
        self.assertEqual(mapped["delisted"], 0)
        self.assertEqual(mapped["erp_modified_at"], "2024-05-01T10:00:00Z")
        self.assertNotIn("is_featured", mapped)
        self.assertNotIn("units_sold", mapped)

    def test_hidden_or_inactive_item_is_delisted(self) -> None:
        hidden = map_item(_record("items", make_item(1, show_in_storefront=False)))
        inactive = map_item(_record("items", make_item(2, status="inactive")))
        self.assertEqual(hidden["delisted"], 1)
        self.assertEqual(hidden["is_online"], 0)
        self.assertEqual(inactive["delisted"], 1)

    def test_item_without_name_or_rate_is_rejected(self) -> None:
        with self.assertRaises(ErpValidationError):
            map_item(_record("items", make_item(1, name="  ")))
        with self.assertRaises(ErpValidationError):
            map_item(_record("items", make_item(1, rate="n/a")))
        with self.assertRaises(ErpValidationError):
            map_item(_record("items", make_item(1, item_id=None)))

    def test_contact_identity_hints(self) -> None:
        payload = make_contact(
            3,
            "",
            contact_persons=[
                {"email": "Owner@Example.com", "is_primary_contact": True},
                {"email": "buyer@example.com", "is_primary_contact": False},
            ],
            cf_storefront_ref="create_customer:customer:3",
            custom_fields=[{"label": "Price Tier", "value": "wholesale"}],
        )
        mapped = map_contact(_record("contacts", payload))

        self.assertEqual(mapped["primary_email"], "owner@example.com")
        self.assertEqual(mapped["secondary_emails"], ["buyer@example.com"])
        self.assertEqual(mapped["storefront_ref"], "create_customer:customer:3")
        self.assertEqual(mapped["price_tier"], "wholesale")
        self.assertEqual(mapped["erp_is_active"], 1)

    def test_contact_without_any_email_is_rejected(self) -> None:
        with self.assertRaises(ErpValidationError):
            map_contact(_record("contacts", make_contact(1, "")))

    def test_modified_at_normalization(self) -> None:
        self.assertEqual(normalize_modified_at("2024-05-01T10:00:00+0000"), "2024-05-01T10:00:00Z")
        self.assertEqual(normalize_modified_at("2024-05-01T10:00:00"), "2024-05-01T10:00:00Z")
        self.assertIsNone(normalize_modified_at("yesterday"))
        self.assertIsNone(normalize_modified_at(None))


if __name__ == "__main__":
    unittest.main()
