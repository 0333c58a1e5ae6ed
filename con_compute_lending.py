"""
CONFIDENTIAL COMPUTE LENDING BATCHES

Providers submit encrypted (compute_units, lend_amount) pairs into batches.
Only the aggregate of a closed batch is ever decrypted:
  - acc_new == encrypted_add(acc_old, input)       (never decrypts an operand)
  - open -> closed -> decryption_requested -> resolved
  - commitment = H(compute_acc, lend_acc, this contract) recorded at request
    time and re-checked before a decryption result is applied.

The confidential-computing service is another contract (metadata['fhe_gateway']).
"""

# -----------------------------------------------------------------------------
# Parameters & Helpers
# -----------------------------------------------------------------------------

ACTION_SUBMIT = 'submit'
ACTION_DECRYPT = 'decrypt'

def domain_hash(*parts):
    s = "|".join(str(x) for x in parts)
    return hashlib.sha3("CLEND:v1|" + s)

def gateway():
    return importlib.import_module(metadata['fhe_gateway'])

# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------

# owner, paused, cooldown (seconds), fhe_gateway
metadata = Hash()

# address -> bool
providers = Hash(default_value=False)

# (address, action) -> datetime of last successful action
last_action = Hash()

# batch_id -> {'is_open': bool, 'status': str, 'compute_total': int|None,
#              'lend_total': int|None, 'submissions': int, 'opened_at', 'closed_at'}
batches = Hash()

# request_id -> {'batch_id': int, 'commitment': str, 'resolved': bool,
#                'requested_at', 'resolved_at'}
decryption_requests = Hash()

# batch_id -> {'total_compute_units': int, 'total_lend_amount': int, 'request_id': int, 'resolved_at'}
results = Hash()

current_batch_id = Variable()

# Events
AuthorityChangedEvent = LogEvent('AuthorityChanged', {
    'previous': {'type': str, 'idx': True},
    'new': {'type': str, 'idx': True}
})

ProviderAddedEvent = LogEvent('ProviderAdded', {
    'provider': {'type': str, 'idx': True}
})

ProviderRemovedEvent = LogEvent('ProviderRemoved', {
    'provider': {'type': str, 'idx': True}
})

PauseToggledEvent = LogEvent('PauseToggled', {
    'paused': {'type': bool}
})

CooldownChangedEvent = LogEvent('CooldownChanged', {
    'old_cooldown': {'type': int},
    'new_cooldown': {'type': int}
})

BatchOpenedEvent = LogEvent('BatchOpened', {
    'batch_id': {'type': int, 'idx': True}
})

BatchClosedEvent = LogEvent('BatchClosed', {
    'batch_id': {'type': int, 'idx': True},
    'submissions': {'type': int}
})

SubmissionRecordedEvent = LogEvent('SubmissionRecorded', {
    'batch_id': {'type': int, 'idx': True},
    'provider': {'type': str, 'idx': True},
    'compute_handle': {'type': str},
    'lend_handle': {'type': str}
})

DecryptionRequestedEvent = LogEvent('DecryptionRequested', {
    'request_id': {'type': int, 'idx': True},
    'batch_id': {'type': int, 'idx': True},
    'commitment': {'type': str}
})

DecryptionResolvedEvent = LogEvent('DecryptionResolved', {
    'batch_id': {'type': int, 'idx': True},
    'request_id': {'type': int, 'idx': True},
    'total_compute_units': {'type': int},
    'total_lend_amount': {'type': int}
})

# -----------------------------------------------------------------------------
# Construction
# -----------------------------------------------------------------------------

@construct
def seed(fhe_gateway: str, cooldown: int):
    assert cooldown >= 0, 'InvalidCooldown'

    metadata['owner'] = ctx.caller
    metadata['paused'] = False
    metadata['cooldown'] = cooldown
    metadata['fhe_gateway'] = fhe_gateway

    current_batch_id.set(0)

# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

def require_authority():
    assert ctx.caller == metadata['owner'], 'NotAuthorized'

def require_unpaused():
    assert not metadata['paused'], 'SystemPaused'

def enforce_cooldown(address: str, action: str):
    last = last_action[address, action]
    if last is not None:
        ready_at = last + datetime.timedelta(seconds=metadata['cooldown'])
        assert now >= ready_at, 'CooldownActive'
    # Advance the clock before any other effect of the guarded call
    last_action[address, action] = now

# -----------------------------------------------------------------------------
# Views
# -----------------------------------------------------------------------------

@export
def get_metadata():
    return {
        'owner': metadata['owner'],
        'paused': metadata['paused'],
        'cooldown': metadata['cooldown'],
        'fhe_gateway': metadata['fhe_gateway'],
        'current_batch_id': current_batch_id.get()
    }

@export
def is_provider(address: str):
    return providers[address] == True

@export
def get_current_batch_id():
    return current_batch_id.get()

@export
def get_batch(batch_id: int):
    data = batches[batch_id]
    if data is None:
        return {
            'exists': False,
            'is_open': False,
            'status': None,
            'compute_total': None,
            'lend_total': None,
            'submissions': 0
        }
    return {
        'exists': True,
        'is_open': data['is_open'],
        'status': data['status'],
        'compute_total': data['compute_total'],
        'lend_total': data['lend_total'],
        'submissions': data['submissions']
    }

@export
def get_decryption_request(request_id: int):
    data = decryption_requests[request_id]
    if data is None:
        return {
            'exists': False,
            'batch_id': 0,
            'commitment': None,
            'resolved': False
        }
    return {
        'exists': True,
        'batch_id': data['batch_id'],
        'commitment': data['commitment'],
        'resolved': data['resolved']
    }

@export
def get_batch_result(batch_id: int):
    return results[batch_id]

@export
def get_cooldown_status(address: str, action: str):
    assert action in (ACTION_SUBMIT, ACTION_DECRYPT), 'Unknown action'
    last = last_action[address, action]
    if last is None:
        return {'last_action': None, 'ready_at': None, 'allowed': True}
    ready_at = last + datetime.timedelta(seconds=metadata['cooldown'])
    return {'last_action': last, 'ready_at': ready_at, 'allowed': now >= ready_at}

# -----------------------------------------------------------------------------
# Access control
# -----------------------------------------------------------------------------

@export
def transfer_authority(new_authority: str):
    require_authority()
    assert len(new_authority) > 0, 'InvalidAddress'

    previous = metadata['owner']
    metadata['owner'] = new_authority

    AuthorityChangedEvent({'previous': previous, 'new': new_authority})

@export
def add_provider(address: str):
    require_authority()
    if providers[address]:
        return
    providers[address] = True
    ProviderAddedEvent({'provider': address})

@export
def remove_provider(address: str):
    require_authority()
    if not providers[address]:
        return
    providers[address] = False
    ProviderRemovedEvent({'provider': address})

@export
def set_paused(paused: bool):
    require_authority()
    if metadata['paused'] == paused:
        return
    metadata['paused'] = paused
    PauseToggledEvent({'paused': paused})

@export
def set_cooldown(seconds: int):
    require_authority()
    assert seconds >= 0, 'InvalidCooldown'

    old = metadata['cooldown']
    metadata['cooldown'] = seconds

    CooldownChangedEvent({'old_cooldown': old, 'new_cooldown': seconds})

# -----------------------------------------------------------------------------
# Batch registry
# -----------------------------------------------------------------------------

@export
def open_batch():
    require_authority()
    require_unpaused()

    batch_id = current_batch_id.get() + 1
    current_batch_id.set(batch_id)

    batches[batch_id] = {
        'is_open': True,
        'status': 'open',
        'compute_total': None,
        'lend_total': None,
        'submissions': 0,
        'opened_at': now,
        'closed_at': None
    }

    BatchOpenedEvent({'batch_id': batch_id})
    return batch_id

@export
def close_batch(batch_id: int):
    require_authority()

    batch = batches[batch_id]
    assert batch is not None and batch['is_open'], 'BatchNotOpen'

    batch['is_open'] = False
    batch['status'] = 'closed'
    batch['closed_at'] = now
    batches[batch_id] = batch

    BatchClosedEvent({'batch_id': batch_id, 'submissions': batch['submissions']})

# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------

@export
def submit_encrypted(batch_id: int, encrypted_compute_units: int, encrypted_lend_amount: int):
    assert providers[ctx.caller], 'NotProvider'
    require_unpaused()
    enforce_cooldown(ctx.caller, ACTION_SUBMIT)

    batch = batches[batch_id]
    assert batch is not None and batch['is_open'], 'BatchNotOpen'

    fhe = gateway()
    assert fhe.is_initialized(handle=encrypted_compute_units), 'InvalidCiphertext'
    assert fhe.is_initialized(handle=encrypted_lend_amount), 'InvalidCiphertext'

    compute_acc = batch['compute_total']
    lend_acc = batch['lend_total']
    if compute_acc is None:
        compute_acc = fhe.encrypted_zero()
    if lend_acc is None:
        lend_acc = fhe.encrypted_zero()

    batch['compute_total'] = fhe.encrypted_add(a=compute_acc, b=encrypted_compute_units)
    batch['lend_total'] = fhe.encrypted_add(a=lend_acc, b=encrypted_lend_amount)
    batch['submissions'] = batch['submissions'] + 1
    batches[batch_id] = batch

    SubmissionRecordedEvent({
        'batch_id': batch_id,
        'provider': ctx.caller,
        'compute_handle': hex(encrypted_compute_units),
        'lend_handle': hex(encrypted_lend_amount)
    })

# -----------------------------------------------------------------------------
# Decryption
# -----------------------------------------------------------------------------

def snapshot_handles(batch):
    compute_acc = batch['compute_total']
    lend_acc = batch['lend_total']
    if compute_acc is None or lend_acc is None:
        zero = gateway().encrypted_zero()
        if compute_acc is None:
            compute_acc = zero
        if lend_acc is None:
            lend_acc = zero
    return compute_acc, lend_acc

def commitment_for(batch):
    compute_acc, lend_acc = snapshot_handles(batch)
    return domain_hash('commit', hex(compute_acc), hex(lend_acc), ctx.this)

def decode_totals(plaintexts):
    assert isinstance(plaintexts, list) and len(plaintexts) == 2, 'InvalidPayload'
    for v in plaintexts:
        assert isinstance(v, int) and not isinstance(v, bool), 'InvalidPayload'
        assert v >= 0, 'InvalidPayload'
    return plaintexts[0], plaintexts[1]

@export
def request_decryption(batch_id: int):
    require_authority()
    require_unpaused()
    enforce_cooldown(ctx.caller, ACTION_DECRYPT)

    batch = batches[batch_id]
    assert batch is not None and not batch['is_open'], 'BatchClosedOrNonExistent'
    assert batch['status'] != 'resolved', 'AlreadyResolved'

    compute_acc, lend_acc = snapshot_handles(batch)
    commitment = commitment_for(batch)

    request_id = gateway().request_decryption(handles=[compute_acc, lend_acc])

    decryption_requests[request_id] = {
        'batch_id': batch_id,
        'commitment': commitment,
        'resolved': False,
        'requested_at': now,
        'resolved_at': None
    }

    batch['status'] = 'decryption_requested'
    batches[batch_id] = batch

    DecryptionRequestedEvent({
        'request_id': request_id,
        'batch_id': batch_id,
        'commitment': commitment
    })
    return request_id

@export
def on_decryption_resolved(request_id: int, plaintexts: list, proof: str):
    # Not gated by pause: completes an already-committed request
    request = decryption_requests[request_id]
    assert request is not None, 'UnknownRequest'
    assert not request['resolved'], 'AlreadyResolved'

    batch_id = request['batch_id']
    batch = batches[batch_id]
    assert batch['status'] != 'resolved', 'AlreadyResolved'

    assert commitment_for(batch) == request['commitment'], 'StateMismatch'

    assert gateway().verify_decryption_proof(
        request_id=request_id, plaintexts=plaintexts, proof=proof
    ), 'InvalidProof'

    total_compute_units, total_lend_amount = decode_totals(plaintexts)

    request['resolved'] = True
    request['resolved_at'] = now
    decryption_requests[request_id] = request

    batch['status'] = 'resolved'
    batches[batch_id] = batch

    results[batch_id] = {
        'total_compute_units': total_compute_units,
        'total_lend_amount': total_lend_amount,
        'request_id': request_id,
        'resolved_at': now
    }

    DecryptionResolvedEvent({
        'batch_id': batch_id,
        'request_id': request_id,
        'total_compute_units': total_compute_units,
        'total_lend_amount': total_lend_amount
    })
