"""
CONFIDENTIAL-COMPUTING GATEWAY

Additively homomorphic handles (Paillier, g = n + 1) plus an asynchronous
decryption queue:
  - E(a) * E(b) mod n^2 == E(a + b)
  - decryption happens off-chain; the oracle signs (request, handles, plaintexts)
    and the signature is checked here before a requester trusts the plaintexts.

Only operator-registered requester contracts may queue handles, so a handle
copied out of an event cannot be decrypted on its own. Requesters receive
their result through on_decryption_resolved(), relayed by the registered
oracle account.
"""

# -----------------------------------------------------------------------------
# Parameters & Helpers
# -----------------------------------------------------------------------------

ZERO_HANDLE = 1  # E(0) with unit randomness, multiplicative identity mod n^2

def modulus_squared():
    return metadata['n_squared']

def valid_handle(handle):
    if not isinstance(handle, int) or isinstance(handle, bool):
        return False
    return 0 < handle < modulus_squared()

def proof_message(request_id: int, handles: list, plaintexts: list):
    parts = ['decrypt', ctx.this, request_id]
    for h in handles:
        parts.append(hex(h))
    for v in plaintexts:
        parts.append(v)
    s = "|".join(str(x) for x in parts)
    return hashlib.sha3("FHEGW:v1|" + s)

# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------

# operator, public modulus, oracle identity
metadata = Hash()

# request_id -> {'requester': str, 'handles': list, 'requested_at': datetime, 'deliveries': int}
decryption_queue = Hash()

# contract name -> bool, the only callers allowed to queue handles for decryption
requesters = Hash(default_value=False)

next_request_id = Variable()

# Events
DecryptionQueuedEvent = LogEvent('DecryptionQueued', {
    'request_id': {'type': int, 'idx': True},
    'requester': {'type': str, 'idx': True},
    'handle_count': {'type': int}
})

DecryptionFulfilledEvent = LogEvent('DecryptionFulfilled', {
    'request_id': {'type': int, 'idx': True},
    'requester': {'type': str, 'idx': True},
    'oracle': {'type': str}
})

RequesterChangedEvent = LogEvent('RequesterChanged', {
    'contract': {'type': str, 'idx': True},
    'allowed': {'type': bool}
})

OracleChangedEvent = LogEvent('OracleChanged', {
    'oracle': {'type': str, 'idx': True},
    'oracle_vk': {'type': str}
})

# -----------------------------------------------------------------------------
# Construction
# -----------------------------------------------------------------------------

@construct
def seed(public_key: int, oracle_vk: str, oracle: str):
    assert public_key > 3, 'Bad public key'

    metadata['operator'] = ctx.caller
    metadata['n'] = public_key
    metadata['n_squared'] = public_key * public_key
    metadata['oracle_vk'] = oracle_vk
    metadata['oracle'] = oracle

    next_request_id.set(1)

# -----------------------------------------------------------------------------
# Views
# -----------------------------------------------------------------------------

@export
def get_public_key():
    return metadata['n']

@export
def get_request(request_id: int):
    data = decryption_queue[request_id]
    if data is None:
        return {
            'exists': False,
            'requester': None,
            'handles': [],
            'deliveries': 0
        }
    return {
        'exists': True,
        'requester': data['requester'],
        'handles': data['handles'],
        'requested_at': data['requested_at'],
        'deliveries': data['deliveries']
    }

@export
def is_requester(contract: str):
    return requesters[contract] == True

@export
def set_requester(contract: str, allowed: bool):
    assert ctx.caller == metadata['operator'], 'NotOperator'

    requesters[contract] = allowed

    RequesterChangedEvent({'contract': contract, 'allowed': allowed})

@export
def set_oracle(oracle: str, oracle_vk: str):
    assert ctx.caller == metadata['operator'], 'NotOperator'
    assert len(oracle_vk) == 64, 'Bad oracle key'

    metadata['oracle'] = oracle
    metadata['oracle_vk'] = oracle_vk

    OracleChangedEvent({'oracle': oracle, 'oracle_vk': oracle_vk})

# -----------------------------------------------------------------------------
# Homomorphic operations
# -----------------------------------------------------------------------------

@export
def encrypted_zero():
    return ZERO_HANDLE

@export
def is_initialized(handle: Any):
    return valid_handle(handle)

@export
def encrypted_add(a: int, b: int):
    assert valid_handle(a) and valid_handle(b), 'InvalidCiphertext'
    return (a * b) % modulus_squared()

# -----------------------------------------------------------------------------
# Decryption queue
# -----------------------------------------------------------------------------

@export
def request_decryption(handles: list):
    assert requesters[ctx.caller], 'NotRequester'
    assert len(handles) > 0, 'No handles'
    for h in handles:
        assert valid_handle(h), 'InvalidCiphertext'

    request_id = next_request_id.get()
    next_request_id.set(request_id + 1)

    decryption_queue[request_id] = {
        'requester': ctx.caller,
        'handles': handles,
        'requested_at': now,
        'deliveries': 0
    }

    DecryptionQueuedEvent({
        'request_id': request_id,
        'requester': ctx.caller,
        'handle_count': len(handles)
    })
    return request_id

@export
def verify_decryption_proof(request_id: int, plaintexts: list, proof: str):
    data = decryption_queue[request_id]
    if data is None:
        return False
    if len(plaintexts) != len(data['handles']):
        return False
    if len(proof) != 128:
        return False
    message = proof_message(request_id, data['handles'], plaintexts)
    return crypto.verify(metadata['oracle_vk'], message, proof)

@export
def fulfill_decryption(request_id: int, plaintexts: list, proof: str):
    assert ctx.caller == metadata['oracle'], 'NotOracle'

    data = decryption_queue[request_id]
    assert data is not None, 'UnknownRequest'
    assert requesters[data['requester']], 'NotRequester'

    # Requester runs its own replay/consistency/proof checks
    requester = importlib.import_module(data['requester'])
    requester.on_decryption_resolved(request_id=request_id, plaintexts=plaintexts, proof=proof)

    data['deliveries'] = data['deliveries'] + 1
    decryption_queue[request_id] = data

    DecryptionFulfilledEvent({
        'request_id': request_id,
        'requester': data['requester'],
        'oracle': ctx.caller
    })
