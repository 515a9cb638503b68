"""
Capability codes checked by the order core.

WHY: The core never ranks roles itself. Each mutating operation asks the
capability gate for exactly one of these codes; which actors hold which
codes is decided by the identity service upstream.
"""

# =============================================================================
# CAPABILITY CATEGORIES
# =============================================================================

class CapabilityCategory:
    """Capability categories for organization."""
    ORDERS = "ORDERS"
    KITCHEN = "KITCHEN"
    PAYMENTS = "PAYMENTS"
    INVENTORY = "INVENTORY"


VIEW_ORDERS = "VIEW_ORDERS"
CREATE_ORDER = "CREATE_ORDER"
EDIT_ORDER = "EDIT_ORDER"
COMPLETE_ORDER = "COMPLETE_ORDER"
CANCEL_ORDER = "CANCEL_ORDER"
DELETE_ORDER = "DELETE_ORDER"
UPDATE_ITEM_STATUS = "UPDATE_ITEM_STATUS"
TAKE_PAYMENT = "TAKE_PAYMENT"
VIEW_PAYMENTS = "VIEW_PAYMENTS"
VIEW_INVENTORY = "VIEW_INVENTORY"
ADJUST_INVENTORY = "ADJUST_INVENTORY"

# Granting this code satisfies every check (organization scoping still applies)
ALL_CAPABILITIES = "*"


# Each capability is defined as: (code, name, description, category)
CAPABILITY_DEFINITIONS = [
    (VIEW_ORDERS, "View Orders", "Read orders and their items", CapabilityCategory.ORDERS),
    (CREATE_ORDER, "Create Order", "Submit new orders at the counter or online", CapabilityCategory.ORDERS),
    (EDIT_ORDER, "Edit Order", "Add, change and remove items; set discount and tip", CapabilityCategory.ORDERS),
    (COMPLETE_ORDER, "Complete Order", "Close a fully paid order", CapabilityCategory.ORDERS),
    (CANCEL_ORDER, "Cancel Order", "Cancel orders and items, returning reserved stock", CapabilityCategory.ORDERS),
    (DELETE_ORDER, "Delete Order", "Remove orders that never received a payment", CapabilityCategory.ORDERS),
    (UPDATE_ITEM_STATUS, "Update Item Status", "Move items through preparing/ready/delivered", CapabilityCategory.KITCHEN),
    (TAKE_PAYMENT, "Take Payment", "Capture full and split payments", CapabilityCategory.PAYMENTS),
    (VIEW_PAYMENTS, "View Payments", "Read payments and allocations", CapabilityCategory.PAYMENTS),
    (VIEW_INVENTORY, "View Inventory", "Read stock movements and ledger checks", CapabilityCategory.INVENTORY),
    (ADJUST_INVENTORY, "Adjust Inventory", "Record manual stock corrections and counts", CapabilityCategory.INVENTORY),
]

CAPABILITY_CODES = frozenset(code for code, _, _, _ in CAPABILITY_DEFINITIONS)
