from .master import Branch, ConsignmentStore, Supplier, Product, CashAccount
from .ledger import CashLedgerEntry, StockLedgerEntry
from .consignment import ConsignmentStatus, Consignment, ConsignmentDetail, ConsignmentSale, ConsignmentReturn
from .purchasing import Purchase, PurchaseLine, Payable, PurchasePayment
from .documents import DocumentSequence, AuditEvent, ReconciliationIssue

__all__ = [
    'Branch', 'ConsignmentStore', 'Supplier', 'Product', 'CashAccount',
    'CashLedgerEntry', 'StockLedgerEntry',
    'ConsignmentStatus', 'Consignment', 'ConsignmentDetail', 'ConsignmentSale', 'ConsignmentReturn',
    'Purchase', 'PurchaseLine', 'Payable', 'PurchasePayment',
    'DocumentSequence', 'AuditEvent', 'ReconciliationIssue',
]
