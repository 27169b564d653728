from typing import NamedTuple
from hathor import (
    Address,
    Blueprint,
    Context,
    NCDepositAction,
    NCWithdrawalAction,
    NCFail,
    TokenUid,
    export,
    public,
    view,
)

#
# === OTC OFFER EXCHANGE BLUEPRINT ===
#
# Collateralized OTC offers for selling a token (possibly not launched yet) against a base token.
#
# Features:
# - Seller collateral in base token, fixed at creation (percent of the total sale value)
# - Sale token may be unknown at creation; both parties reconcile it through address claims
# - Conflicting claims raise a sticky dispute flag that multiplies back-out fees
# - Deposits are accounted by the amounts actually received through deposit actions
# - Auto-settlement on acceptance/deposit when every condition already holds
# - Cancellation (no valid bid) and back-out (failed match) after the deadline
# - Pull-based payouts per offer; aggregated fees per token withdrawable by the owner
#
# === CONFIG CONSTANTS ===
#

DEFAULT_COLLATERAL_PERCENT = 25
DEFAULT_FEE_PERCENT = 1
DEFAULT_DISPUTE_MULTIPLIER = 5

MAX_FEE_PERCENT = 5
MAX_DISPUTE_MULTIPLIER = 10
MAX_PAGE_LIMIT = 200


#
# === STATUS CONSTANTS ===
#

STATUS_ADDRESS_PENDING = 0   # still open, sale tokens not fully deposited
STATUS_FUNDED = 1            # seller deposited every sale token, still open
STATUS_MATCHED = 2           # buyer accepted (is_open flipped to False)
STATUS_SETTLED = 3           # terminal: swap executed
STATUS_BACKED_OUT = 4        # terminal: failed match unwound after deadline
STATUS_CANCELLED = -2        # terminal: seller withdrew offer without a valid bid
STATUS_NOT_FOUND = -1


def deadline_passed(created_at: int, deadline_secs: int, now: int) -> bool:
    """True once more than deadline_secs have elapsed since created_at."""
    return now - created_at > deadline_secs


#
# === VIEW RETURN TYPES (JSON-friendly) ===
#

class OfferDetails(NamedTuple):
    seller: str             # base58 string
    buyer: str              # base58 string or "" if none yet
    base_token: str         # token uid hex
    sale_token: str         # token uid hex or "" if unknown
    sale_token_verified: bool
    amount_for_sale: int
    total_sale_value: int
    collateral_value: int
    deadline_secs: int
    created_at: int
    is_open: bool
    bid_value: int
    tokens_deposited: int
    is_disputed: bool
    status: int             # -1 means "offer not found"


class ClaimsView(NamedTuple):
    seller_claim: str
    buyer_claim: str
    sale_token: str
    sale_token_verified: bool
    is_disputed: bool


class PayoutsView(NamedTuple):
    seller_base: int
    seller_sale: int
    buyer: str
    buyer_base: int
    buyer_sale: int


class ConfigView(NamedTuple):
    owner: str
    collateral_percent: int
    fee_percent: int
    dispute_multiplier: int


class FeeQuoteView(NamedTuple):
    fee: int
    net: int


class OfferIdsPage(NamedTuple):
    cursor_in: int
    limit: int
    next_cursor: int
    ids: list[int]


class CountersView(NamedTuple):
    total_offers: int
    count_address_pending: int
    count_funded: int
    count_matched: int
    count_settled: int
    count_backed_out: int
    count_cancelled: int
    count_disputed: int


#
# === CUSTOM FAIL TYPES ===
#

class OfferError(NCFail):
    """Base class for offer-related failures."""


class InvalidConfig(OfferError):
    """Invalid initialization or configuration parameters."""


class AuthorizationError(OfferError):
    """Caller is not the party (or owner) this operation requires."""


class LifecycleError(OfferError):
    """Operation invoked in the wrong offer state."""


class TimingError(OfferError):
    """Deadline passed when freshness was required, or not passed when expiry was required."""


class InvalidValue(OfferError):
    """Malformed offer terms, insufficient deposit/bid, or over-deposit."""


class LedgerError(OfferError):
    """Deposit/withdrawal actions missing, unexpected, zero, or of the wrong amount."""


@export
class OtcOfferExchange(Blueprint):
    """
    OTC offer exchange between a seller and a buyer.

    Identity model:
      - owner: caller identity at initialize(); the only identity allowed to withdraw fees
      - seller: caller identity at create_offer()
      - buyer: caller identity at accept_offer()

    Money model:
      - seller collateral (base token) = total_sale_value * collateral_percent // 100
      - settlement fee = (bid_value + collateral_value) * fee_percent // 100, charged once in base token
      - cancel/back-out fees use the same formula; disputed offers multiply it by dispute_multiplier
      - terminal transitions only credit payouts; parties pull them later with withdraw()

    Deadline model:
      - create/deposit/claim/accept/settle require the deadline NOT to have passed
      - cancel_offer/back_out require the deadline to have passed
      - expiry is detected lazily against ctx.block.timestamp
    """

    # === Contract-level roles/config ===
    owner: Address
    collateral_percent: int
    fee_percent: int
    dispute_multiplier: int

    # === Per-offer terms ===
    sellers: dict[int, Address]
    buyers: dict[int, Address]

    base_tokens: dict[int, TokenUid]
    sale_tokens: dict[int, TokenUid]
    sale_token_verified: dict[int, bool]

    amounts_for_sale: dict[int, int]
    total_sale_values: dict[int, int]
    collateral_values: dict[int, int]
    deadline_secs: dict[int, int]
    created_at: dict[int, int]

    # === Per-offer transient state ===
    is_open: dict[int, bool]
    bid_values: dict[int, int]
    tokens_deposited: dict[int, int]

    # Address claims (one per party per offer) and the sticky dispute flag
    seller_claims: dict[int, TokenUid]
    buyer_claims: dict[int, TokenUid]
    disputed: dict[int, bool]

    # === Payouts credited at terminal transitions ===
    payout_buyers: dict[int, Address]
    seller_base_payouts: dict[int, int]
    seller_sale_payouts: dict[int, int]
    buyer_base_payouts: dict[int, int]
    buyer_sale_payouts: dict[int, int]

    statuses: dict[int, int]
    next_offer_id: int

    # For website paging
    offer_ids: list[int]

    # === Counters (website stats) ===
    total_offers: int
    count_address_pending: int
    count_funded: int
    count_matched: int
    count_settled: int
    count_backed_out: int
    count_cancelled: int
    count_disputed: int

    # === Aggregated fee balances (per token uid) ===
    fee_balances: dict[TokenUid, int]

    #
    # === INITIALIZE ===
    #

    @public
    def initialize(
        self,
        ctx: Context,
        collateral_percent: int,
        fee_percent: int,
        dispute_multiplier: int,
    ) -> None:
        """
        Initializes contract storage and configuration.

        Bounds:
          - 0 < collateral_percent <= 100
          - 0 <= fee_percent <= MAX_FEE_PERCENT
          - 1 <= dispute_multiplier <= MAX_DISPUTE_MULTIPLIER
          - the largest possible back-out fee must fit inside the collateral
        """
        if collateral_percent <= 0 or collateral_percent > 100:
            raise InvalidConfig("collateral_percent out of bounds")
        if fee_percent < 0 or fee_percent > MAX_FEE_PERCENT:
            raise InvalidConfig("fee_percent out of bounds")
        if dispute_multiplier < 1 or dispute_multiplier > MAX_DISPUTE_MULTIPLIER:
            raise InvalidConfig("dispute_multiplier out of bounds")

        # Worst case: fee on (collateral + almost the whole sale value) is taken from the collateral.
        if fee_percent * dispute_multiplier * (collateral_percent + 100) > 100 * collateral_percent:
            raise InvalidConfig("Disputed fee could exceed the collateral")

        self.owner = self._get_caller_id(ctx)
        self.collateral_percent = collateral_percent
        self.fee_percent = fee_percent
        self.dispute_multiplier = dispute_multiplier

        # --- Offer storage ---
        self.sellers = {}
        self.buyers = {}

        self.base_tokens = {}
        self.sale_tokens = {}
        self.sale_token_verified = {}

        self.amounts_for_sale = {}
        self.total_sale_values = {}
        self.collateral_values = {}
        self.deadline_secs = {}
        self.created_at = {}

        self.is_open = {}
        self.bid_values = {}
        self.tokens_deposited = {}

        self.seller_claims = {}
        self.buyer_claims = {}
        self.disputed = {}

        self.payout_buyers = {}
        self.seller_base_payouts = {}
        self.seller_sale_payouts = {}
        self.buyer_base_payouts = {}
        self.buyer_sale_payouts = {}

        self.statuses = {}
        self.next_offer_id = 0

        self.offer_ids = []

        # --- Counters ---
        self.total_offers = 0
        self.count_address_pending = 0
        self.count_funded = 0
        self.count_matched = 0
        self.count_settled = 0
        self.count_backed_out = 0
        self.count_cancelled = 0
        self.count_disputed = 0

        self.fee_balances = {}

    #
    # === OWNER-ONLY ADMIN ===
    #

    @public
    def set_owner(self, ctx: Context, new_owner: Address) -> None:
        """Owner-only: hand over ownership (and fee withdrawal rights)."""
        if self._get_caller_id(ctx) != self.owner:
            raise AuthorizationError("Only the contract owner can transfer ownership")
        self.owner = new_owner

    #
    # === INTERNAL HELPERS ===
    #

    def _get_caller_id(self, ctx: Context) -> Address:
        """Returns the caller identity (CallerID)."""
        caller = ctx.get_caller_address()
        if caller is None:
            raise AuthorizationError("Caller identity is not available")
        return caller

    def _emit(self, name: str, fields: list[str]) -> None:
        """Emit an off-chain notification as `Name key=value ...` bytes."""
        self.syscall.emit_event(" ".join([name] + fields).encode("utf-8"))

    def _fee(self, amount: int, disputed: bool) -> int:
        """Floor fee on amount; disputed offers pay dispute_multiplier times the base rate."""
        if amount <= 0:
            return 0
        multiplier = self.dispute_multiplier if disputed else 1
        return (amount * multiplier * self.fee_percent) // 100

    def _inc_status_counter(self, status: int, delta: int) -> None:
        if delta == 0:
            return
        if status == STATUS_ADDRESS_PENDING:
            self.count_address_pending += delta
        elif status == STATUS_FUNDED:
            self.count_funded += delta
        elif status == STATUS_MATCHED:
            self.count_matched += delta
        elif status == STATUS_SETTLED:
            self.count_settled += delta
        elif status == STATUS_BACKED_OUT:
            self.count_backed_out += delta
        elif status == STATUS_CANCELLED:
            self.count_cancelled += delta

    def _set_status(self, offer_id: int, new_status: int) -> None:
        """Set offer status and keep counters consistent."""
        old_status = self.statuses.get(offer_id)
        if old_status == new_status:
            return
        if old_status is not None:
            self._inc_status_counter(old_status, -1)
        self.statuses[offer_id] = new_status
        self._inc_status_counter(new_status, 1)

    def _refresh_status(self, offer_id: int) -> None:
        """Derive the non-terminal status from the offer fields."""
        if not self.is_open[offer_id]:
            self._set_status(offer_id, STATUS_MATCHED)
        elif self.tokens_deposited[offer_id] >= self.amounts_for_sale[offer_id]:
            self._set_status(offer_id, STATUS_FUNDED)
        else:
            self._set_status(offer_id, STATUS_ADDRESS_PENDING)

    def _offer_exists(self, offer_id: int) -> bool:
        if offer_id < 0:
            return False
        return self.sellers.get(offer_id) is not None

    def _assert_exists(self, offer_id: int) -> None:
        if offer_id < 0:
            raise LifecycleError("Offer ID must be non-negative")
        if offer_id >= self.next_offer_id:
            raise LifecycleError("Offer ID does not exist")

    def _assert_not_terminal(self, offer_id: int) -> None:
        self._assert_exists(offer_id)
        status = self.statuses[offer_id]
        if status == STATUS_SETTLED:
            raise LifecycleError("Offer has already been settled")
        if status == STATUS_CANCELLED:
            raise LifecycleError("Offer has been cancelled")
        if status == STATUS_BACKED_OUT:
            raise LifecycleError("Offer has been backed out")

    def _is_deadline_passed(self, ctx: Context, offer_id: int) -> bool:
        return deadline_passed(self.created_at[offer_id], self.deadline_secs[offer_id], ctx.block.timestamp)

    def _assert_before_deadline(self, ctx: Context, offer_id: int) -> None:
        if self._is_deadline_passed(ctx, offer_id):
            raise TimingError("Offer deadline has passed")

    def _assert_after_deadline(self, ctx: Context, offer_id: int) -> None:
        if not self._is_deadline_passed(ctx, offer_id):
            raise TimingError("Offer deadline has not passed yet")

    def _assert_party(self, ctx: Context, offer_id: int) -> Address:
        """Caller must be the seller or the bound buyer."""
        caller = self._get_caller_id(ctx)
        if caller == self.sellers[offer_id]:
            return caller
        buyer = self.buyers.get(offer_id)
        if buyer is not None and caller == buyer:
            return caller
        raise AuthorizationError("Caller is neither seller nor buyer for this offer")

    #
    # === TOKEN LEDGER (DEPOSIT / WITHDRAWAL ACTIONS) ===
    #

    def _measure_deposit(self, ctx: Context, token_uid: TokenUid) -> int:
        """Return the amount actually deposited in token_uid by this call."""
        action = ctx.get_single_action(token_uid)
        if not isinstance(action, NCDepositAction):
            raise LedgerError("Expected a deposit action")
        if action.amount <= 0:
            raise LedgerError("Deposit amount must be > 0")
        return action.amount

    def _take_deposit(self, ctx: Context, token_uid: TokenUid) -> int:
        """Debit: exactly one deposit of token_uid; returns the measured amount."""
        if set(ctx.actions.keys()) != {token_uid}:
            raise LedgerError("Deposit must include exactly the expected token")
        return self._measure_deposit(ctx, token_uid)

    def _process_withdraw(self, ctx: Context, token_uid: TokenUid, expected_amount: int) -> None:
        """Validate that this call withdraws exactly expected_amount of token_uid."""
        action = ctx.get_single_action(token_uid)
        if not isinstance(action, NCWithdrawalAction):
            raise LedgerError("Expected a withdrawal action")
        if action.amount != expected_amount:
            raise LedgerError("Incorrect withdrawal amount")

    def _single_action_token(self, ctx: Context) -> TokenUid:
        action_tokens = set(ctx.actions.keys())
        if len(action_tokens) != 1:
            raise LedgerError("Withdraw must operate on exactly one token")
        return next(iter(action_tokens))

    def _credit_seller(self, offer_id: int, base_amount: int, sale_amount: int) -> None:
        self.seller_base_payouts[offer_id] = self.seller_base_payouts.get(offer_id, 0) + base_amount
        self.seller_sale_payouts[offer_id] = self.seller_sale_payouts.get(offer_id, 0) + sale_amount

    def _credit_buyer(self, offer_id: int, buyer: Address | None, base_amount: int, sale_amount: int) -> None:
        if buyer is None:
            return
        self.payout_buyers[offer_id] = buyer
        self.buyer_base_payouts[offer_id] = self.buyer_base_payouts.get(offer_id, 0) + base_amount
        self.buyer_sale_payouts[offer_id] = self.buyer_sale_payouts.get(offer_id, 0) + sale_amount

    def _accrue_fee(self, token_uid: TokenUid, fee: int) -> None:
        if fee > 0:
            self.fee_balances[token_uid] = self.fee_balances.get(token_uid, 0) + fee

    def _close(self, offer_id: int, terminal_status: int) -> None:
        """Reset transient fields and sale terms; the offer id is never reopened."""
        self.is_open[offer_id] = False
        if offer_id in self.buyers:
            del self.buyers[offer_id]
        self.bid_values[offer_id] = 0
        self.tokens_deposited[offer_id] = 0
        self.sale_token_verified[offer_id] = False

        self.amounts_for_sale[offer_id] = 0
        self.total_sale_values[offer_id] = 0
        self.collateral_values[offer_id] = 0
        self.deadline_secs[offer_id] = 0
        self.created_at[offer_id] = 0

        self._set_status(offer_id, terminal_status)

    #
    # === CREATE OFFER ===
    #

    @public(allow_deposit=True)
    def create_offer(
        self,
        ctx: Context,
        base_token: TokenUid,
        amount_to_sell: int,
        total_sale_value: int,
        deadline_secs: int,
    ) -> int:
        """
        Open an offer selling amount_to_sell sale tokens for total_sale_value base tokens.

        Actions:
          - deposit of exactly collateral_value in base_token (required)
          - deposit of the sale token (optional): supplies the sale token uid as the
            seller's address claim and counts towards tokens_deposited
        """
        seller = self._get_caller_id(ctx)

        if amount_to_sell <= 0:
            raise InvalidValue("Amount to sell must be > 0")
        if total_sale_value <= 0:
            raise InvalidValue("Total sale value must be > 0")
        if deadline_secs <= 0:
            raise InvalidValue("Deadline must be > 0 seconds")

        collateral_value = (total_sale_value * self.collateral_percent) // 100
        if collateral_value <= 0:
            raise InvalidValue("Total sale value too small to require collateral")

        action_tokens = set(ctx.actions.keys())
        if base_token not in action_tokens:
            raise LedgerError("Collateral deposit in base token is required")
        if len(action_tokens) > 2:
            raise LedgerError("At most the base token and one sale token may be deposited")

        collateral_received = self._measure_deposit(ctx, base_token)
        if collateral_received != collateral_value:
            raise LedgerError("Incorrect collateral deposit amount")

        sale_token: TokenUid | None = None
        tokens_received = 0
        for token_uid in action_tokens:
            if token_uid != base_token:
                sale_token = token_uid
        if sale_token is not None:
            tokens_received = self._measure_deposit(ctx, sale_token)
            if tokens_received > amount_to_sell:
                raise InvalidValue("Sale token deposit exceeds amount to sell")

        offer_id = self.next_offer_id
        self.sellers[offer_id] = seller
        self.base_tokens[offer_id] = base_token
        self.sale_token_verified[offer_id] = False

        self.amounts_for_sale[offer_id] = amount_to_sell
        self.total_sale_values[offer_id] = total_sale_value
        self.collateral_values[offer_id] = collateral_value
        self.deadline_secs[offer_id] = deadline_secs
        self.created_at[offer_id] = ctx.block.timestamp

        self.is_open[offer_id] = True
        self.bid_values[offer_id] = 0
        self.tokens_deposited[offer_id] = tokens_received
        self.disputed[offer_id] = False

        if sale_token is not None:
            self.sale_tokens[offer_id] = sale_token
            self.seller_claims[offer_id] = sale_token

        self.next_offer_id = offer_id + 1
        self.offer_ids.append(offer_id)
        self.total_offers += 1
        self._refresh_status(offer_id)

        self._emit("OfferCreated", [
            "id=" + str(offer_id),
            "sale_token=" + ("" if sale_token is None else sale_token.hex()),
            "base_token=" + base_token.hex(),
            "amount=" + str(amount_to_sell),
            "total_value=" + str(total_sale_value),
        ])
        if sale_token is not None:
            self._emit("TokenAddressUpdated", ["id=" + str(offer_id), "address=" + sale_token.hex()])
        return offer_id

    #
    # === ADDRESS RECONCILIATION (MUTUAL CLAIMS) ===
    #

    @public
    def submit_claim(self, ctx: Context, offer_id: int, sale_token: TokenUid) -> None:
        """Seller or bound buyer asserts the sale token uid (once per party per offer)."""
        self._assert_not_terminal(offer_id)
        caller = self._assert_party(ctx, offer_id)
        self._claim(ctx, offer_id, caller == self.sellers[offer_id], sale_token)

    @public
    def set_sale_token_address(self, ctx: Context, offer_id: int, sale_token: TokenUid) -> None:
        """Seller's address claim."""
        self._assert_not_terminal(offer_id)
        if self._get_caller_id(ctx) != self.sellers[offer_id]:
            raise AuthorizationError("Only seller can set the sale token address")
        self._claim(ctx, offer_id, True, sale_token)

    @public
    def confirm_sale_token_address(self, ctx: Context, offer_id: int, expected: TokenUid) -> None:
        """Buyer's address claim; verifies the sale token when it matches the seller's claim."""
        self._assert_not_terminal(offer_id)
        buyer = self.buyers.get(offer_id)
        if buyer is None or self._get_caller_id(ctx) != buyer:
            raise AuthorizationError("Only buyer can confirm the sale token address")
        self._claim(ctx, offer_id, False, expected)

    def _claim(self, ctx: Context, offer_id: int, from_seller: bool, sale_token: TokenUid) -> None:
        self._assert_before_deadline(ctx, offer_id)

        if sale_token == self.base_tokens[offer_id]:
            raise InvalidValue("Sale token must differ from base token")

        own_claims = self.seller_claims if from_seller else self.buyer_claims
        other_claims = self.buyer_claims if from_seller else self.seller_claims
        if offer_id in own_claims:
            raise LifecycleError("Address claim already submitted for this offer")
        own_claims[offer_id] = sale_token

        counter_claim = other_claims.get(offer_id)
        if counter_claim is None:
            # Tentative only: a unilateral claim never verifies.
            if offer_id not in self.sale_tokens:
                self.sale_tokens[offer_id] = sale_token
                self._emit("TokenAddressUpdated", ["id=" + str(offer_id), "address=" + sale_token.hex()])
        elif counter_claim == sale_token:
            self.sale_tokens[offer_id] = sale_token
            self.sale_token_verified[offer_id] = True
            self._emit("TokenAddressUpdated", ["id=" + str(offer_id), "address=" + sale_token.hex()])
        elif not self.disputed[offer_id]:
            self.disputed[offer_id] = True
            self.count_disputed += 1

        self._refresh_status(offer_id)

    #
    # === DEPOSIT SALE TOKENS (SELLER-ONLY) ===
    #

    @public(allow_deposit=True)
    def deposit_tokens(self, ctx: Context, offer_id: int) -> None:
        """Seller deposits sale tokens; settles immediately when everything else is in place."""
        self._assert_not_terminal(offer_id)

        if self._get_caller_id(ctx) != self.sellers[offer_id]:
            raise AuthorizationError("Only seller can deposit sale tokens")

        self._assert_before_deadline(ctx, offer_id)

        sale_token = self.sale_tokens.get(offer_id)
        if sale_token is None:
            raise LifecycleError("Sale token address has not been set")

        received = self._take_deposit(ctx, sale_token)
        remaining = self.amounts_for_sale[offer_id] - self.tokens_deposited[offer_id]
        if received > remaining:
            raise InvalidValue("Sale token deposit exceeds the remaining amount to sell")

        self.tokens_deposited[offer_id] += received
        self._refresh_status(offer_id)

        if self.sale_token_verified[offer_id] and self._is_settleable(offer_id):
            self._settle(offer_id)

    #
    # === ACCEPT OFFER (BUYER = CALLERID) ===
    #

    @public(allow_deposit=True)
    def accept_offer(self, ctx: Context, offer_id: int, buyer_asserts_verified: bool) -> None:
        """
        Buyer matches the offer by depositing the base-token payment.

        WARNING: buyer_asserts_verified=True marks the current sale token as verified
        without an address claim. Only use it when the sale token is trusted out-of-band.
        """
        self._assert_not_terminal(offer_id)

        if not self.is_open[offer_id]:
            raise LifecycleError("Offer has already been accepted")

        self._assert_before_deadline(ctx, offer_id)

        buyer = self._get_caller_id(ctx)
        if buyer == self.sellers[offer_id]:
            raise AuthorizationError("Seller cannot accept their own offer")

        received = self._take_deposit(ctx, self.base_tokens[offer_id])
        if received > self.total_sale_values[offer_id]:
            raise InvalidValue("Bid exceeds the total sale value")

        self.bid_values[offer_id] += received
        self.buyers[offer_id] = buyer
        self.is_open[offer_id] = False
        self._refresh_status(offer_id)

        self._emit("OfferAccepted", ["id=" + str(offer_id), "buyer=" + str(buyer)])

        # The buyer was bound in this call, so it has no claim yet and no dispute can exist.
        if buyer_asserts_verified and self._is_settleable(offer_id):
            self.sale_token_verified[offer_id] = True
            self.buyer_claims[offer_id] = self.sale_tokens[offer_id]
            self._settle(offer_id)

    #
    # === SETTLEMENT ===
    #

    def _is_settleable(self, offer_id: int) -> bool:
        """Funding conditions for settlement (verification checked separately)."""
        return (
            not self.is_open[offer_id]
            and self.tokens_deposited[offer_id] >= self.amounts_for_sale[offer_id]
            and self.bid_values[offer_id] >= self.total_sale_values[offer_id]
        )

    @public
    def settle_offer(self, ctx: Context, offer_id: int) -> None:
        """Buyer or seller executes the swap once both sides are funded and the address is verified."""
        self._assert_not_terminal(offer_id)

        if self.is_open[offer_id]:
            raise LifecycleError("Offer has not been accepted")

        self._assert_before_deadline(ctx, offer_id)
        self._assert_party(ctx, offer_id)

        if self.tokens_deposited[offer_id] < self.amounts_for_sale[offer_id]:
            raise InvalidValue("Seller has not deposited every sale token")
        if self.bid_values[offer_id] < self.total_sale_values[offer_id]:
            raise InvalidValue("Bid is below the total sale value")
        if not self.sale_token_verified[offer_id]:
            raise LifecycleError("Sale token address has not been verified")

        self._settle(offer_id)

    def _settle(self, offer_id: int) -> None:
        base_token = self.base_tokens[offer_id]
        buyer = self.buyers[offer_id]
        amount_for_sale = self.amounts_for_sale[offer_id]
        total_value = self.bid_values[offer_id] + self.collateral_values[offer_id]
        fee = self._fee(total_value, False)

        self._close(offer_id, STATUS_SETTLED)

        self._credit_seller(offer_id, total_value - fee, 0)
        self._credit_buyer(offer_id, buyer, 0, amount_for_sale)
        self._accrue_fee(base_token, fee)

        self._emit("OfferSettled", ["id=" + str(offer_id)])

    #
    # === CANCEL (SELLER-ONLY, AFTER DEADLINE, NO VALID BID) ===
    #

    @public
    def cancel_offer(self, ctx: Context, offer_id: int) -> None:
        """Seller unwinds an offer nobody matched (or that was under-paid) after the deadline."""
        self._assert_not_terminal(offer_id)

        if self._get_caller_id(ctx) != self.sellers[offer_id]:
            raise AuthorizationError("Only seller can cancel this offer")

        self._assert_after_deadline(ctx, offer_id)

        bid_value = self.bid_values[offer_id]
        if bid_value >= self.total_sale_values[offer_id]:
            raise LifecycleError("A valid bid exists; use back_out instead")

        buyer = self.buyers.get(offer_id)
        collateral_value = self.collateral_values[offer_id]
        tokens_deposited = self.tokens_deposited[offer_id]
        fee = self._fee(collateral_value + bid_value, False)

        self._close(offer_id, STATUS_CANCELLED)

        self._credit_buyer(offer_id, buyer, bid_value, 0)
        self._credit_seller(offer_id, collateral_value - fee, tokens_deposited)
        self._accrue_fee(self.base_tokens[offer_id], fee)

        self._emit("OfferCancelled", ["id=" + str(offer_id)])

    #
    # === BACK OUT (EITHER PARTY, AFTER MATCH AND DEADLINE) ===
    #

    @public
    def back_out(self, ctx: Context, offer_id: int) -> None:
        """
        Unwind a matched offer that did not settle before the deadline.

        - Seller under-delivered while the bid was sufficient: the buyer gets bid + collateral
          minus the fee, the seller only gets back whatever sale tokens it deposited.
        - Otherwise: each side gets its own deposits back, the fee is taken from the collateral.
        - A disputed offer pays dispute_multiplier times the fee. Outside a seller default the
          penalty is split: each party pays it on the base amount it gets back.
        """
        self._assert_not_terminal(offer_id)

        if self.is_open[offer_id]:
            raise LifecycleError("Offer has not been accepted")

        self._assert_after_deadline(ctx, offer_id)
        self._assert_party(ctx, offer_id)

        buyer = self.buyers[offer_id]
        bid_value = self.bid_values[offer_id]
        collateral_value = self.collateral_values[offer_id]
        tokens_deposited = self.tokens_deposited[offer_id]
        seller_defaulted = (
            tokens_deposited < self.amounts_for_sale[offer_id]
            and bid_value >= self.total_sale_values[offer_id]
        )
        disputed = self.disputed[offer_id]
        if seller_defaulted:
            buyer_fee = self._fee(bid_value + collateral_value, disputed)
            seller_fee = 0
        elif disputed:
            buyer_fee = self._fee(bid_value, True)
            seller_fee = self._fee(collateral_value, True)
        else:
            buyer_fee = 0
            seller_fee = self._fee(bid_value + collateral_value, False)

        self._close(offer_id, STATUS_BACKED_OUT)

        if seller_defaulted:
            self._credit_buyer(offer_id, buyer, bid_value + collateral_value - buyer_fee, 0)
            self._credit_seller(offer_id, 0, tokens_deposited)
        else:
            self._credit_buyer(offer_id, buyer, bid_value - buyer_fee, 0)
            self._credit_seller(offer_id, collateral_value - seller_fee, tokens_deposited)
        self._accrue_fee(self.base_tokens[offer_id], buyer_fee + seller_fee)

        self._emit("OfferBackedOut", ["id=" + str(offer_id)])

    #
    # === WITHDRAW PAYOUTS ===
    #

    @public(allow_withdrawal=True)
    def withdraw(self, ctx: Context, offer_id: int) -> None:
        """Seller or buyer pulls its credited payout, one token per call, exact amount."""
        self._assert_exists(offer_id)

        caller = self._get_caller_id(ctx)
        token_uid = self._single_action_token(ctx)
        base_token = self.base_tokens[offer_id]
        sale_token = self.sale_tokens.get(offer_id)

        if caller == self.sellers[offer_id]:
            base_payouts = self.seller_base_payouts
            sale_payouts = self.seller_sale_payouts
        elif caller == self.payout_buyers.get(offer_id):
            base_payouts = self.buyer_base_payouts
            sale_payouts = self.buyer_sale_payouts
        else:
            raise AuthorizationError("Caller has no payouts for this offer")

        if token_uid == base_token:
            payouts = base_payouts
        elif sale_token is not None and token_uid == sale_token:
            payouts = sale_payouts
        else:
            raise LedgerError("Token is not part of this offer")

        owed = payouts.get(offer_id, 0)
        if owed <= 0:
            raise LifecycleError("Nothing to withdraw in this token")

        self._process_withdraw(ctx, token_uid, owed)
        payouts[offer_id] = 0

    @public(allow_withdrawal=True)
    def withdraw_fees(self, ctx: Context) -> None:
        """Owner-only: withdraw the whole accrued fee balance of one token."""
        if self._get_caller_id(ctx) != self.owner:
            raise AuthorizationError("Only the contract owner can withdraw fees")

        token_uid = self._single_action_token(ctx)
        balance = self.fee_balances.get(token_uid, 0)
        if balance <= 0:
            raise LifecycleError("No fees available for this token")

        self._process_withdraw(ctx, token_uid, balance)
        self.fee_balances[token_uid] = 0

    #
    # === VIEWS ===
    #

    @view
    def get_config(self) -> ConfigView:
        return ConfigView(
            owner=str(self.owner),
            collateral_percent=self.collateral_percent,
            fee_percent=self.fee_percent,
            dispute_multiplier=self.dispute_multiplier,
        )

    @view
    def get_fee_balance(self, token_uid: TokenUid) -> int:
        """Return the accrued fee balance for a given token uid."""
        return self.fee_balances.get(token_uid, 0)

    @view
    def get_fee_quote(self, amount: int, disputed: bool) -> FeeQuoteView:
        """Quote the fee charged on amount (base units)."""
        if amount < 0:
            raise InvalidValue("Amount must be non-negative")
        fee = self._fee(amount, disputed)
        return FeeQuoteView(fee=fee, net=amount - fee)

    @view
    def get_offer(self, offer_id: int) -> OfferDetails:
        """Safe, JSON-friendly view."""
        if not self._offer_exists(offer_id):
            return OfferDetails(
                seller="",
                buyer="",
                base_token="",
                sale_token="",
                sale_token_verified=False,
                amount_for_sale=0,
                total_sale_value=0,
                collateral_value=0,
                deadline_secs=0,
                created_at=0,
                is_open=False,
                bid_value=0,
                tokens_deposited=0,
                is_disputed=False,
                status=STATUS_NOT_FOUND,
            )

        buyer = self.buyers.get(offer_id)
        sale_token = self.sale_tokens.get(offer_id)
        return OfferDetails(
            seller=str(self.sellers[offer_id]),
            buyer="" if buyer is None else str(buyer),
            base_token=self.base_tokens[offer_id].hex(),
            sale_token="" if sale_token is None else sale_token.hex(),
            sale_token_verified=self.sale_token_verified[offer_id],
            amount_for_sale=self.amounts_for_sale[offer_id],
            total_sale_value=self.total_sale_values[offer_id],
            collateral_value=self.collateral_values[offer_id],
            deadline_secs=self.deadline_secs[offer_id],
            created_at=self.created_at[offer_id],
            is_open=self.is_open[offer_id],
            bid_value=self.bid_values[offer_id],
            tokens_deposited=self.tokens_deposited[offer_id],
            is_disputed=self.disputed[offer_id],
            status=self.statuses[offer_id],
        )

    @view
    def get_offer_exists(self, offer_id: int) -> bool:
        """Return True if an offer exists (has a seller recorded)."""
        return self._offer_exists(offer_id)

    @view
    def get_offer_status(self, offer_id: int) -> int:
        """Return offer status, or -1 if offer not found."""
        if not self._offer_exists(offer_id):
            return STATUS_NOT_FOUND
        return self.statuses.get(offer_id, STATUS_NOT_FOUND)

    @view
    def has_deadline_passed(self, offer_id: int, current_timestamp: int) -> bool:
        """
        NOTE: @view cannot access Context, so caller must pass current_timestamp.
        Terminal offers have their terms reset and always report True.
        """
        if not self._offer_exists(offer_id):
            raise LifecycleError("Offer ID does not exist")
        return deadline_passed(self.created_at[offer_id], self.deadline_secs[offer_id], current_timestamp)

    @view
    def get_address_claims(self, offer_id: int) -> ClaimsView:
        if not self._offer_exists(offer_id):
            return ClaimsView(seller_claim="", buyer_claim="", sale_token="", sale_token_verified=False, is_disputed=False)

        seller_claim = self.seller_claims.get(offer_id)
        buyer_claim = self.buyer_claims.get(offer_id)
        sale_token = self.sale_tokens.get(offer_id)
        return ClaimsView(
            seller_claim="" if seller_claim is None else seller_claim.hex(),
            buyer_claim="" if buyer_claim is None else buyer_claim.hex(),
            sale_token="" if sale_token is None else sale_token.hex(),
            sale_token_verified=self.sale_token_verified[offer_id],
            is_disputed=self.disputed[offer_id],
        )

    @view
    def get_payouts(self, offer_id: int) -> PayoutsView:
        """Outstanding (not yet withdrawn) payouts of an offer."""
        payout_buyer = self.payout_buyers.get(offer_id)
        return PayoutsView(
            seller_base=self.seller_base_payouts.get(offer_id, 0),
            seller_sale=self.seller_sale_payouts.get(offer_id, 0),
            buyer="" if payout_buyer is None else str(payout_buyer),
            buyer_base=self.buyer_base_payouts.get(offer_id, 0),
            buyer_sale=self.buyer_sale_payouts.get(offer_id, 0),
        )

    @view
    def get_counters(self) -> CountersView:
        """Return lightweight counters suitable for website stats."""
        return CountersView(
            total_offers=self.total_offers,
            count_address_pending=self.count_address_pending,
            count_funded=self.count_funded,
            count_matched=self.count_matched,
            count_settled=self.count_settled,
            count_backed_out=self.count_backed_out,
            count_cancelled=self.count_cancelled,
            count_disputed=self.count_disputed,
        )

    @view
    def get_offer_ids_page(self, cursor: int, limit: int) -> OfferIdsPage:
        """
        Return a page of offer IDs suitable for website pagination.

        - cursor is an index into the offer_ids array (NOT an offer_id)
        - next_cursor is 0 when no more data
        """
        if cursor < 0:
            cursor = 0
        if limit <= 0:
            raise InvalidValue("limit must be > 0")
        if limit > MAX_PAGE_LIMIT:
            raise InvalidValue("limit too large")

        total = len(self.offer_ids)
        if cursor >= total:
            return OfferIdsPage(cursor_in=cursor, limit=limit, next_cursor=0, ids=[])

        end = cursor + limit
        if end > total:
            end = total

        # Typed storage lists may reject slicing.
        ids: list[int] = []
        i = cursor
        while i < end:
            ids.append(self.offer_ids[i])
            i += 1

        next_cursor = 0 if end >= total else end
        return OfferIdsPage(cursor_in=cursor, limit=limit, next_cursor=next_cursor, ids=ids)
