"""
Protocol constants shared across fairplay components.

Domain tags separate the hash domains used by the commitment codec. Contract
signatures are kept as canonical ABI strings; selectors and topics are derived
from them in `fairplay.chain.abi`.
"""

from __future__ import annotations

# ---- Hash domains ----

COMMIT_DOMAIN_TAG = b"fairplay-commit-v1"
MIX_DOMAIN_TAG = b"fairplay-mix-v1"
REQUEST_ID_DOMAIN_TAG = b"fairplay-request-v1"

SEED_LEN = 32
MIN_SEED_LEN = 16
MAX_SEED_LEN = 1024
COMMITMENT_LEN = 32

# ---- Units ----

WEI = 10**18
DEFAULT_MIN_DEPOSIT = 10**15          # 0.001 native units
DEFAULT_MAX_DEPOSIT = 100 * WEI
DEFAULT_WITHDRAW_GAS_LIMIT = 100_000

# ---- Operational defaults ----

DEFAULT_SCAN_UPPER_BOUND = 1000
SCAN_HARD_CAP = 100_000
DEFAULT_RPC_TIMEOUT_S = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY_S = 1.0
DEFAULT_FULFILLMENT_TIMEOUT_S = 300.0
DEFAULT_SWEEP_INTERVAL_S = 15.0
DEFAULT_LOG_WINDOW_BLOCKS = 5000
DEFAULT_RECEIPT_POLL_INTERVAL_S = 2.0

FEE_CURRENCIES = ("native", "token")

# ---- Subscription registry ----

# keccak256("SubscriptionCreated(uint256,address)"); handle is topics[1], owner is data word 0.
SUBSCRIPTION_CREATED_TOPIC = "0x464722b4166576d3dcbba877b999bc35cf911f4eaf434b7eba68fa113951d0bf"

SIG_CREATE_SUBSCRIPTION = "createSubscription()"
SIG_GET_SUBSCRIPTION = "getSubscription(uint256)"
SIG_FUND_NATIVE = "fundSubscriptionWithNative(uint256)"
SIG_ADD_CONSUMER = "addConsumer(uint256,address)"
SIG_REMOVE_CONSUMER = "removeConsumer(uint256,address)"

# ---- Fee token (ERC-677) ----

SIG_BALANCE_OF = "balanceOf(address)"
SIG_TRANSFER_AND_CALL = "transferAndCall(address,uint256,bytes)"

# ---- Consuming contract ----

SIG_UPDATE_SUBSCRIPTION_ID = "updateSubscriptionId(uint256)"
SIG_QUOTE_FEE = "quoteFee(uint256)"
SIG_REQUEST_RANDOMNESS = "requestRandomness(bytes32,bytes32)"
SIG_SEQUENCE_OF = "sequenceOf(bytes32)"

# sequenceNumber and requestId are indexed (topics[1], topics[2]); commitment is data.
EVENT_RANDOMNESS_REQUESTED = "RandomnessRequested(uint256,bytes32,bytes32)"
# sequenceNumber is indexed; revealedSeed and providerValue are data words.
EVENT_RANDOMNESS_FULFILLED = "RandomnessFulfilled(uint256,bytes32,bytes32)"
