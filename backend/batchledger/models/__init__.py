from .catalog import Branch, Category, Product, Recipe
from .inventory import BatchType, CategoryBatchType, InventoryBatch, DeductionReceipt, BatchMovement

__all__ = [
    'Branch', 'Category', 'Product', 'Recipe',
    'BatchType', 'CategoryBatchType', 'InventoryBatch', 'DeductionReceipt', 'BatchMovement',
]
