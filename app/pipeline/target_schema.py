"""
Canonical product target schema.

Field names follow the catalog API (camelCase). Aliases feed the fuzzy
strategy, name hints and semantic types feed the statistical strategy.
"""

from app.models.enums import DataType, SemanticType
from app.schemas.imports import TargetField, TargetSchema


PRODUCT_TARGET_SCHEMA = TargetSchema(
    entity_type="product",
    fields=[
        TargetField(
            name="id", data_type=DataType.STRING, unique=True,
            description="Unique product identifier",
            aliases=["product_id", "item_id", "uuid"],
            name_hints=[r"\bid\b", r"identifier", r"uuid"],
        ),
        TargetField(
            name="name", data_type=DataType.STRING, required=True,
            description="Product display name",
            aliases=["product_name", "title", "product_title", "item_name"],
            name_hints=[r"name", r"title", r"label"],
        ),
        TargetField(
            name="slug", data_type=DataType.STRING, unique=True,
            description="URL-friendly product handle",
            aliases=["handle", "permalink", "url_key"],
            name_hints=[r"slug", r"handle", r"permalink"],
        ),
        TargetField(
            name="sku", data_type=DataType.STRING, required=True, unique=True,
            description="Stock keeping unit",
            aliases=["product_code", "item_code", "part_number", "model_number", "article_number"],
            name_hints=[r"sku", r"code", r"part.?number", r"model", r"article"],
            semantic_types=[SemanticType.SKU],
        ),
        TargetField(
            name="gtin", data_type=DataType.STRING, unique=True,
            description="Global trade item number (UPC/EAN/barcode)",
            aliases=["barcode", "upc", "ean", "isbn"],
            name_hints=[r"barcode", r"upc", r"ean", r"gtin", r"isbn"],
            semantic_types=[SemanticType.BARCODE],
        ),
        TargetField(
            name="shortDescription", data_type=DataType.STRING,
            description="Short marketing description",
            aliases=["description", "short_desc", "summary", "blurb"],
            name_hints=[r"desc", r"summary", r"blurb"],
        ),
        TargetField(
            name="longDescription", data_type=DataType.STRING,
            description="Full product description",
            aliases=["long_description", "details", "body", "full_description"],
            name_hints=[r"long.?desc", r"details", r"body", r"content"],
        ),
        TargetField(
            name="story", data_type=DataType.STRING,
            description="Brand or product story",
            aliases=["brand_story", "narrative"],
            name_hints=[r"story", r"narrative"],
        ),
        TargetField(
            name="price", data_type=DataType.NUMBER, required=True, critical=True,
            description="Selling price",
            aliases=["selling_price", "unit_price", "retail_price"],
            name_hints=[r"price", r"amount", r"cost", r"rrp", r"msrp"],
            semantic_types=[SemanticType.CURRENCY],
        ),
        TargetField(
            name="compareAtPrice", data_type=DataType.NUMBER, critical=True,
            description="Original price shown struck through",
            aliases=["compare_at_price", "was_price", "original_price", "list_price"],
            name_hints=[r"compare", r"was.?price", r"original.?price", r"list.?price"],
            semantic_types=[SemanticType.CURRENCY],
        ),
        TargetField(
            name="stock", data_type=DataType.INTEGER,
            description="Units on hand",
            aliases=["quantity", "inventory", "stock_level", "on_hand", "available"],
            name_hints=[r"stock", r"inventory", r"quantity", r"on.?hand", r"available"],
        ),
        TargetField(
            name="lowStockThreshold", data_type=DataType.INTEGER,
            description="Reorder alert level",
            aliases=["low_stock_threshold", "reorder_level", "reorder_point", "min_stock"],
            name_hints=[r"threshold", r"reorder", r"min.?stock"],
        ),
        TargetField(
            name="brandId", data_type=DataType.STRING,
            description="Brand reference",
            aliases=["brand", "brand_id", "manufacturer", "vendor"],
            name_hints=[r"brand", r"manufacturer", r"vendor", r"maker"],
        ),
        TargetField(
            name="parentId", data_type=DataType.STRING,
            description="Parent product for variants",
            aliases=["parent_id", "parent_sku", "parent"],
            name_hints=[r"parent"],
        ),
        TargetField(
            name="status", data_type=DataType.STRING,
            description="Publication status",
            aliases=["state", "product_status", "published"],
            name_hints=[r"status", r"state", r"active", r"published"],
        ),
        TargetField(
            name="isVariant", data_type=DataType.BOOLEAN,
            description="Whether the row is a variant of a parent product",
            aliases=["is_variant", "variant"],
            name_hints=[r"variant"],
        ),
        TargetField(
            name="createdAt", data_type=DataType.DATE,
            description="Creation timestamp",
            aliases=["created_at", "created", "date_added"],
            name_hints=[r"created", r"added"],
            semantic_types=[SemanticType.DATE],
        ),
        TargetField(
            name="updatedAt", data_type=DataType.DATE,
            description="Last update timestamp",
            aliases=["updated_at", "modified", "last_modified"],
            name_hints=[r"updated", r"modified"],
            semantic_types=[SemanticType.DATE],
        ),
    ],
)
