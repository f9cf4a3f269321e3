APP_NAME = "Retail Pricing"

DATA_DIR = "data"
DB_FILE_NAME = "retail.db"
DB_ENV_VAR = "RETAIL_PRICING_DB"

TABLE_SCHEMA_VERSION = "schema_version"
SCHEMA_VERSION = "1.0.0"

# seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT_SECONDS = 10.0

# currency precision (fraction digits) used when amounts are frozen
CURRENCY_PLACES = 2

INVOICE_PREFIX = "INV"
RETURN_PREFIX = "RET"

INVOICE_TEMPLATE_PATH = "resources/templates/invoices/sale_invoice.html"
