import hashlib
import logging
import math
import secrets

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

logger = logging.getLogger(__name__)

# ---- Chain-constant parameters & helpers (mirror contracts) ----

DEFAULT_KEY_BITS = 1024
ZERO_HANDLE = 1

LENDING_CONTRACT = "con_compute_lending"
GATEWAY_CONTRACT = "con_fhe_gateway"

def sha3_hex(s: str) -> str:
    # Domain-tagged strings are never valid hex, so this matches on-chain sha3
    return hashlib.sha3_256(s.encode("utf-8")).hexdigest()

def commitment_hash(compute_handle: int, lend_handle: int, contract: str = LENDING_CONTRACT) -> str:
    # Mirrors con_compute_lending.commitment_for
    return sha3_hex("CLEND:v1|" + "|".join(["commit", hex(compute_handle), hex(lend_handle), contract]))

def proof_message(request_id: int, handles, plaintexts, gateway: str = GATEWAY_CONTRACT) -> str:
    # Mirrors con_fhe_gateway.proof_message
    parts = ["decrypt", gateway, str(request_id)]
    parts.extend(hex(h) for h in handles)
    parts.extend(str(v) for v in plaintexts)
    return sha3_hex("FHEGW:v1|" + "|".join(parts))

# ---- Paillier (g = n + 1) ----------------------------------------------------

class PaillierKeypair:
    """
    Private decryption key for the gateway's public modulus.
    Only the decryption oracle should ever hold one of these.
    """
    def __init__(self, p: int, q: int):
        if p == q:
            raise ValueError("Primes must differ")
        self.n = p * q
        self.n_squared = self.n * self.n
        self.lam = math.lcm(p - 1, q - 1)
        self.mu = pow(self.lam, -1, self.n)

    @property
    def public_key(self) -> int:
        return self.n

def generate_keypair(bits: int = DEFAULT_KEY_BITS) -> PaillierKeypair:
    # RSA primes are exactly what Paillier needs: two large, distinct, equal-length primes
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    numbers = key.private_numbers()
    return PaillierKeypair(numbers.p, numbers.q)

def random_unit(n: int) -> int:
    while True:
        r = secrets.randbelow(n - 1) + 1
        if math.gcd(r, n) == 1:
            return r

def encrypt(public_n: int, value: int, randomness: int = None) -> int:
    if value < 0 or value >= public_n:
        raise ValueError("Plaintext out of range")
    n_squared = public_n * public_n
    if randomness is None:
        randomness = random_unit(public_n)
    return ((1 + value * public_n) * pow(randomness, public_n, n_squared)) % n_squared

def decrypt(keypair: PaillierKeypair, ciphertext: int) -> int:
    if not 0 < ciphertext < keypair.n_squared:
        raise ValueError("Ciphertext out of range")
    u = pow(ciphertext, keypair.lam, keypair.n_squared)
    return (((u - 1) // keypair.n) * keypair.mu) % keypair.n

def add(public_n: int, a: int, b: int) -> int:
    # Mirrors con_fhe_gateway.encrypted_add
    return (a * b) % (public_n * public_n)

# ---- High-level builders -----------------------------------------------------

def build_submission(public_n: int,
                     compute_units: int,
                     lend_amount: int,
                     compute_randomness: int = None,
                     lend_randomness: int = None):
    """
    Returns kwargs for contract.submit_encrypted():
        (batch_id, encrypted_compute_units, encrypted_lend_amount)
    You still supply `batch_id` when calling the chain method.
    """
    if compute_units < 0 or lend_amount < 0:
        raise ValueError("Submissions must be non-negative")

    return {
        'encrypted_compute_units': encrypt(public_n, compute_units, compute_randomness),
        'encrypted_lend_amount': encrypt(public_n, lend_amount, lend_randomness)
    }

def verify_key_hex(signing_key: ed25519.Ed25519PrivateKey) -> str:
    raw = signing_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return raw.hex()

def sign_decryption(signing_key: ed25519.Ed25519PrivateKey,
                    request_id: int,
                    handles,
                    plaintexts,
                    gateway: str = GATEWAY_CONTRACT) -> str:
    message = proof_message(request_id, handles, plaintexts, gateway=gateway)
    return signing_key.sign(message.encode("utf-8")).hex()

# ---- Off-chain decryption oracle --------------------------------------------

class DecryptionOracle:
    """
    Plays the confidential-computing service's off-chain half: decrypts the
    handles of a pending gateway request and signs the result.
    """
    def __init__(self, keypair: PaillierKeypair, signing_key: ed25519.Ed25519PrivateKey = None,
                 gateway: str = GATEWAY_CONTRACT):
        self.keypair = keypair
        self.signing_key = signing_key or ed25519.Ed25519PrivateKey.generate()
        self.gateway = gateway

    @property
    def verify_key(self) -> str:
        return verify_key_hex(self.signing_key)

    def decrypt_request(self, request_id: int, handles):
        plaintexts = [decrypt(self.keypair, h) for h in handles]
        proof = sign_decryption(self.signing_key, request_id, handles, plaintexts, gateway=self.gateway)
        logger.debug("Decrypted request %s (%d handles)", request_id, len(handles))
        return {
            'request_id': request_id,
            'plaintexts': plaintexts,
            'proof': proof
        }

    def fulfill(self, gateway_contract, request_id: int, **call_kwargs):
        """
        Reads the pending request from the gateway, decrypts it and relays the
        signed result. `call_kwargs` are forwarded to the chain call
        (signer, environment).
        """
        request = gateway_contract.get_request(request_id=request_id)
        if not request['exists']:
            raise ValueError(f"Unknown decryption request {request_id}")
        if not gateway_contract.is_requester(contract=request['requester']):
            raise ValueError(f"Request {request_id} was queued by unregistered requester {request['requester']}")

        response = self.decrypt_request(request_id, request['handles'])
        gateway_contract.fulfill_decryption(
            request_id=request_id,
            plaintexts=response['plaintexts'],
            proof=response['proof'],
            **call_kwargs,
        )
        logger.info("Relayed decryption for request %s to %s", request_id, request['requester'])
        return response
