from walletcore.models.user import User, UserRole
from walletcore.models.balance import Balance
from walletcore.models.transaction import Transaction, TransactionType, TransactionStatus
from walletcore.models.token import TokenDeployment, DepositAddress
from walletcore.models.withdrawal import WithdrawalRequest, WithdrawalStatus, ProcessingType
from walletcore.models.copy_trade import (
    Trader, RiskLevel, CopyPosition, PositionStatus, TraderWaitlist, WaitlistStatus,
)
from walletcore.models.notification import Notification
from walletcore.models.reconciliation import ReconciliationIncident, IncidentStatus
