from login_guard.models.login_attempt import LoginAttemptRecord
from login_guard.models.account_lockout import AccountLockout
from login_guard.models.ip_block import IpBlock
