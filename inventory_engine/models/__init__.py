from inventory_engine.models.tenant import Branch, Tenant
from inventory_engine.models.inventory import InventoryItem, StockMovement
from inventory_engine.models.menu_item import MenuItem, RecipeLine
from inventory_engine.models.pos_item import POSItem
from inventory_engine.models.order import Order, OrderLine
from inventory_engine.models.sync_queue import SyncQueueEntry
