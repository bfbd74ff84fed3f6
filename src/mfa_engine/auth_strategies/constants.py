# auth_strategies/constants.py

# TOTP parameters (RFC 6238 defaults understood by every authenticator app)
TOTP_DIGITS = 6
TOTP_INTERVAL_SECONDS = 30
TOTP_SECRET_LENGTH = 32  # base32 characters, 160 bits
BACKUP_CODE_BYTES = 4  # 8 hex characters

# Emailed codes share the TOTP code shape so login routes them to both engines
EMAIL_CODE_DIGITS = TOTP_DIGITS

# WebAuthn
PASSKEY_CHALLENGE_BYTES = 32
PASSKEY_TIMEOUT_MS = 60000
PASSKEY_RECEIPT_TTL_SECONDS = 600
# ES256, RS256
SUPPORTED_ALGORITHM_IDS = [-7, -257]

# Redis key prefixes for ephemeral MFA state
MFA_PENDING_PREFIX = "mfa:pending:"
MFA_CHALLENGE_PREFIX = "mfa:challenge:"
EMAIL_CODE_PREFIX = "mfa:email_code:"
PASSKEY_RECEIPT_PREFIX = "mfa:passkey_registered:"
