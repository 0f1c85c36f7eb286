"""Catalog workbook schema: sheet names, column variants, markers and limits."""

from typing import Dict, List, Tuple

# Datastore tables in parent -> child order. Inserts follow this order,
# deletes run in reverse.
PARTS_TABLE = "parts"
VEHICLE_APPLICATIONS_TABLE = "vehicle_applications"
CROSS_REFERENCES_TABLE = "cross_references"
ALIASES_TABLE = "vehicle_aliases"

CATALOG_TABLES = [
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
    CROSS_REFERENCES_TABLE,
    ALIASES_TABLE,
]

# Tables whose rows point at a part
PART_CHILD_TABLES = [VEHICLE_APPLICATIONS_TABLE, CROSS_REFERENCES_TABLE]

# Canonical sheet titles, keyed by the table each sheet feeds
SHEET_NAMES = {
    PARTS_TABLE: "Parts",
    VEHICLE_APPLICATIONS_TABLE: "Vehicle Applications",
    CROSS_REFERENCES_TABLE: "Cross References",
    ALIASES_TABLE: "Vehicle Aliases",
}

# Accepted sheet titles (normalized) for each table
SHEET_NAME_VARIANTS = {
    PARTS_TABLE: ["parts", "partes", "catalog", "catalogo"],
    VEHICLE_APPLICATIONS_TABLE: [
        "vehicle applications", "vehicle apps", "applications", "aplicaciones",
    ],
    CROSS_REFERENCES_TABLE: [
        "cross references", "cross refs", "crossrefs", "referencias cruzadas",
    ],
    ALIASES_TABLE: ["vehicle aliases", "aliases", "alias"],
}

MANDATORY_SHEETS = [PARTS_TABLE, VEHICLE_APPLICATIONS_TABLE]
OPTIONAL_SHEETS = [CROSS_REFERENCES_TABLE, ALIASES_TABLE]

# Brand cross-reference columns on the Parts sheet: field -> competitor brand
BRAND_COLUMNS = {
    "national_skus": "NATIONAL",
    "atv_skus": "ATV",
    "syd_skus": "SYD",
    "tmk_skus": "TMK",
    "grob_skus": "GROB",
    "race_skus": "RACE",
    "oem_skus": "OEM",
    "oem_2_skus": "OEM 2",
    "gmb_skus": "GMB",
    "gsp_skus": "GSP",
    "fag_skus": "FAG",
}

BRAND_BY_NAME = {brand: column for column, brand in BRAND_COLUMNS.items()}

# Fields holding hidden identifiers
ID_FIELDS = ("identity_id", "part_id")

# Mapping of normalized header variations to row fields, per table.
# Header text is normalized (lowercase, accents folded, runs of spaces,
# underscores and hyphens collapsed to "_") before lookup.
COLUMN_MAPPINGS: Dict[str, Dict[str, List[str]]] = {
    PARTS_TABLE: {
        "identity_id": ["_id"],
        "action_marker": ["_action", "action", "accion"],
        "status": ["status", "estado", "estatus", "workflow_status"],
        "acr_sku": ["acr_sku", "sku", "acr", "sku_acr"],
        "part_type": ["part_type", "type", "clase", "tipo"],
        "position_type": ["position_type", "position", "posicion"],
        "abs_type": ["abs_type", "abs"],
        "bolt_pattern": ["bolt_pattern", "birlos", "bolts"],
        "drive_type": ["drive_type", "traccion", "drive"],
        "specifications": [
            "specifications", "specs", "especificaciones", "observaciones",
        ],
    },
    VEHICLE_APPLICATIONS_TABLE: {
        "identity_id": ["_id"],
        "part_id": ["_part_id"],
        "action_marker": ["_action", "action", "accion"],
        "status": ["status", "estado", "estatus"],
        "acr_sku": ["acr_sku", "sku", "acr", "sku_acr"],
        "make": ["make", "marca"],
        "model": ["model", "modelo"],
        "start_year": ["start_year", "year_start", "from_year", "ano_inicial"],
        "end_year": ["end_year", "year_end", "to_year", "ano_final"],
    },
    CROSS_REFERENCES_TABLE: {
        "identity_id": ["_id"],
        "part_id": ["_acr_part_id", "_part_id"],
        "action_marker": ["_action", "action", "accion"],
        "status": ["status", "estado", "estatus"],
        "acr_sku": ["acr_sku", "sku", "acr", "sku_acr"],
        "competitor_brand": ["competitor_brand", "brand", "marca_competidor"],
        "competitor_sku": ["competitor_sku", "sku_competidor"],
    },
    ALIASES_TABLE: {
        "identity_id": ["_id"],
        "action_marker": ["_action", "action", "accion"],
        "status": ["status", "estado", "estatus"],
        "alias": ["alias"],
        "canonical_name": ["canonical_name", "canonical", "nombre_canonico"],
        "alias_type": ["alias_type", "tipo_alias"],
    },
}

for _column, _brand in BRAND_COLUMNS.items():
    COLUMN_MAPPINGS[PARTS_TABLE][_column] = [
        _column,
        _column[: -len("_skus")],
        _brand.lower().replace(" ", "_"),
    ]

# Fields that may not be blank; child SKUs are required only without a parent id
REQUIRED_FIELDS = {
    PARTS_TABLE: ["acr_sku", "part_type"],
    VEHICLE_APPLICATIONS_TABLE: ["make", "model", "start_year", "end_year"],
    CROSS_REFERENCES_TABLE: ["competitor_brand", "competitor_sku"],
    ALIASES_TABLE: ["alias", "canonical_name", "alias_type"],
}

# Identity columns that must all be present once a sheet carries any of them
REQUIRED_ID_FIELDS = {
    PARTS_TABLE: ["identity_id"],
    VEHICLE_APPLICATIONS_TABLE: ["identity_id", "part_id"],
    CROSS_REFERENCES_TABLE: ["identity_id", "part_id"],
    ALIASES_TABLE: ["identity_id"],
}

# Columns written by the exporter: (field, header, hidden)
EXPORT_COLUMNS: Dict[str, List[Tuple[str, str, bool]]] = {
    PARTS_TABLE: [
        ("identity_id", "_id", True),
        ("acr_sku", "ACR_SKU", False),
        ("status", "Status", False),
        ("part_type", "Part_Type", False),
        ("position_type", "Position_Type", False),
        ("abs_type", "ABS_Type", False),
        ("bolt_pattern", "Bolt_Pattern", False),
        ("drive_type", "Drive_Type", False),
        ("specifications", "Specifications", False),
    ] + [
        (column, brand.title(), False) for column, brand in BRAND_COLUMNS.items()
    ],
    VEHICLE_APPLICATIONS_TABLE: [
        ("identity_id", "_id", True),
        ("part_id", "_part_id", True),
        ("acr_sku", "ACR_SKU", False),
        ("make", "Make", False),
        ("model", "Model", False),
        ("start_year", "Start_Year", False),
        ("end_year", "End_Year", False),
    ],
    ALIASES_TABLE: [
        ("identity_id", "_id", True),
        ("alias", "Alias", False),
        ("canonical_name", "Canonical_Name", False),
        ("alias_type", "Alias_Type", False),
    ],
}

# Status cell values
DELETE_MARKERS = {"eliminar", "delete", "deleted", "borrar", "remove"}
STATUS_VALUES = {
    "activo": "ACTIVE",
    "active": "ACTIVE",
    "inactivo": "INACTIVE",
    "inactive": "INACTIVE",
}
STATUS_LABELS = {"ACTIVE": "Activo", "INACTIVE": "Inactivo"}

# Columns a blank cell leaves as stored; new rows get the default
FIELD_DEFAULTS = {
    PARTS_TABLE: {"workflow_status": "ACTIVE"},
}

# Semicolon lists in brand cells; a prefixed token removes one member
LIST_DELIMITER = ";"
LIST_DELETE_PREFIX = "[DELETE]"

# Maximum lengths for text fields
MAX_LENGTHS = {
    "acr_sku": 50,
    "part_type": 100,
    "position_type": 50,
    "abs_type": 20,
    "bolt_pattern": 50,
    "drive_type": 50,
    "specifications": 2000,
    "make": 50,
    "model": 100,
    "competitor_brand": 50,
    "competitor_sku": 50,
    "alias": 100,
    "canonical_name": 100,
    "alias_type": 20,
}

# Phrases that mark a row of operator instructions under the headers
INSTRUCTION_KEYWORDS = [
    "do not", "don't", "leave", "blank", "required", "optional", "enter",
    "separate", "semicolon", "hidden", "e.g.", "example", "format",
    "no modificar", "no editar", "obligatorio", "opcional", "separar",
    "dejar", "ejemplo", "ej.", "usar",
]
