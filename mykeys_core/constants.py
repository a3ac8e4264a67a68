# mykeys_core/constants.py

ROLE_ADMIN = "admin"
ROLE_MEMBER = "member"
ROLES = (ROLE_ADMIN, ROLE_MEMBER)

ENTITY_PERSON = "person"
ENTITY_AGENT = "agent"
ENTITY_TYPES = (ENTITY_PERSON, ENTITY_AGENT)

VERIFICATION_METHODS = ("google", "microsoft", "email")

# Persisted key layout; must stay stable for existing namespaces.
RING_KEY = "ring:{ring_id}"
RING_KEYS_LIST_KEY = "ring:{ring_id}:keys:list"
MEMBER_RINGS_KEY = "rings:member:{identifier}"
KEY_VISIBILITY_KEY = "ring:{ring_id}:key:{key_name}:visibility"
KEY_REQUESTS_KEY = "ring:{ring_id}:key:{key_name}:requests"
VAULT_ENTRY_KEY = "vault:ring:{ring_id}:key:{key_name}:user:{owner}:secret:{name}"
VAULT_LIST_KEY = "vault:ring:{ring_id}:key:{key_name}:user:{owner}:secrets:list"
ACCOUNT_KEY = "persona:{identifier}"

VAULT_ALGORITHM = "aes-256-gcm"
VAULT_KDF_INFO = b"mykeys-vault-v1"
