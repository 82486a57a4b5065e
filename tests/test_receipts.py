"""
Tests for the soulbound receipt issuer.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import pytest

from nullanchor.errors import (
    AlreadyMinted,
    AppendOnlyViolation,
    ApprovalsDisabled,
    AuthorizationError,
    InvalidEvidence,
    InvalidRecipient,
    MintingDisabled,
    TokenNotFound,
    TransfersDisabled,
)
from nullanchor.receipts import MINTER_ROLE, ReceiptIssuer, token_id_for
from nullanchor.records import NULL_ADDRESS

from conftest import ADMIN, OUTSIDER, WALLET


MINTER = "0x" + "4d" * 20
WARRANT = "0x" + "11" * 32
ATTESTATION = "0x" + "22" * 32
EVIDENCE = "0x" + "77" * 32


@pytest.fixture
def minter(issuer):
    issuer.grant_role(ADMIN, MINTER_ROLE, MINTER)
    return MINTER


def _mint(issuer, caller, recipient=WALLET, attestation=ATTESTATION, evidence=EVIDENCE):
    return issuer.mint(caller, recipient, WARRANT, attestation, evidence)


class TestMint:
    """Tests for receipt minting."""

    def test_mint(self, issuer, minter, clock):
        """A mint creates a token owned by the recipient."""
        result = _mint(issuer, minter)
        assert result.token_id == token_id_for(WARRANT, ATTESTATION)
        assert issuer.owner_of(result.token_id) == WALLET
        assert issuer.receipt_hash(result.token_id) == EVIDENCE
        assert issuer.original_minter(result.token_id) == minter
        assert issuer.mint_timestamp(result.token_id) == clock()
        assert issuer.balance_of(WALLET) == 1
        assert issuer.total_supply() == 1

    def test_token_id_is_pair_derived(self):
        """Token ids depend on both digests and their order."""
        assert token_id_for(WARRANT, ATTESTATION) != token_id_for(ATTESTATION, WARRANT)
        assert token_id_for("0x" + "ab" * 32, ATTESTATION) == token_id_for("0x" + "AB" * 32, ATTESTATION)

    def test_second_mint_for_pair_fails(self, issuer, minter):
        """Each pair mints at most once."""
        first = _mint(issuer, minter)
        with pytest.raises(AlreadyMinted) as exc_info:
            _mint(issuer, minter, evidence="0x" + "78" * 32)
        assert exc_info.value.token_id == first.token_id
        assert issuer.total_minted == 1

    def test_receipt_hash_is_unique(self, issuer, minter):
        """One receipt document cannot back two tokens."""
        _mint(issuer, minter)
        with pytest.raises(AlreadyMinted):
            _mint(issuer, minter, attestation="0x" + "23" * 32)
        assert issuer.is_receipt_minted(EVIDENCE)

    def test_requires_minter_role(self, issuer):
        """Callers without MINTER_ROLE are refused."""
        with pytest.raises(AuthorizationError):
            _mint(issuer, OUTSIDER)

    @pytest.mark.parametrize("recipient", [NULL_ADDRESS, "alice", ""])
    def test_invalid_recipient(self, issuer, minter, recipient):
        """The null address and non-addresses cannot receive."""
        with pytest.raises(InvalidRecipient):
            _mint(issuer, minter, recipient=recipient)

    @pytest.mark.parametrize("evidence", ["0x" + "00" * 32, "0x1234", "not-hex"])
    def test_invalid_evidence(self, issuer, minter, evidence):
        """Evidence must be a non-zero 32-byte digest."""
        with pytest.raises(InvalidEvidence):
            _mint(issuer, minter, evidence=evidence)

    def test_minting_disabled(self, issuer, minter):
        """A disabled issuer refuses every mint until re-enabled."""
        issuer.set_minting_enabled(ADMIN, False)
        with pytest.raises(MintingDisabled):
            _mint(issuer, minter)
        issuer.set_minting_enabled(ADMIN, True)
        assert issuer.exists(_mint(issuer, minter).token_id)

    def test_toggle_requires_admin(self, issuer):
        """Only the admin flips the minting switch."""
        with pytest.raises(AuthorizationError):
            issuer.set_minting_enabled(OUTSIDER, False)

    def test_created_disabled(self, clock):
        """Minting may start switched off."""
        issuer = ReceiptIssuer(admin=ADMIN, minting_enabled=False, clock=clock)
        assert not issuer.minting_enabled

    def test_token_for_pair(self, issuer, minter):
        """Tokens can be looked up by their digest pair."""
        assert issuer.token_for_pair(WARRANT, ATTESTATION) is None
        _mint(issuer, minter)
        token = issuer.token_for_pair(WARRANT, ATTESTATION)
        assert token.owner == WALLET
        assert token.to_dict()["receiptHash"] == EVIDENCE


class TestBurn:
    """Tests for burning."""

    def test_burn(self, issuer, minter):
        """Burning removes ownership and supply."""
        token_id = _mint(issuer, minter).token_id
        issuer.burn(ADMIN, token_id)
        assert not issuer.exists(token_id)
        assert issuer.balance_of(WALLET) == 0
        assert issuer.total_supply() == 0
        assert issuer.total_burned == 1
        with pytest.raises(TokenNotFound):
            issuer.owner_of(token_id)

    def test_burned_id_stays_reserved(self, issuer, minter):
        """A burned receipt can never be minted again."""
        token_id = _mint(issuer, minter).token_id
        issuer.burn(ADMIN, token_id)
        with pytest.raises(AlreadyMinted):
            _mint(issuer, minter, evidence="0x" + "78" * 32)
        assert issuer.token_for_pair(WARRANT, ATTESTATION).burned

    def test_burn_requires_admin(self, issuer, minter):
        """Only the admin burns."""
        token_id = _mint(issuer, minter).token_id
        with pytest.raises(AuthorizationError):
            issuer.burn(OUTSIDER, token_id)

    def test_burn_unknown_token(self, issuer):
        """Unknown ids are reported."""
        with pytest.raises(TokenNotFound):
            issuer.burn(ADMIN, "0x" + "99" * 32)

    def test_mint_facts_immutable(self, issuer, minter):
        """The store refuses to rewrite or delete mint records."""
        token_id = _mint(issuer, minter).token_id
        with pytest.raises(AppendOnlyViolation):
            with issuer._transaction():
                issuer._conn.execute("UPDATE tokens SET receipt_hash = 'x'")
        with pytest.raises(AppendOnlyViolation):
            with issuer._transaction():
                issuer._conn.execute("DELETE FROM tokens")
        assert issuer.receipt_hash(token_id) == EVIDENCE


class TestSoulbound:
    """Tests for the transfer surface."""

    def test_transfers_disabled_by_default(self, issuer, minter):
        """Even the owner cannot transfer a soulbound receipt."""
        token_id = _mint(issuer, minter).token_id
        with pytest.raises(TransfersDisabled):
            issuer.transfer_from(WALLET, WALLET, OUTSIDER, token_id)
        assert issuer.owner_of(token_id) == WALLET

    def test_approvals_disabled_by_default(self, issuer, minter):
        """Approvals fail closed."""
        token_id = _mint(issuer, minter).token_id
        with pytest.raises(ApprovalsDisabled):
            issuer.approve(WALLET, OUTSIDER, token_id)
        with pytest.raises(ApprovalsDisabled):
            issuer.set_approval_for_all(WALLET, OUTSIDER, True)

    def test_transfer_mode(self, issuer, minter):
        """With transfer mode on, the owner may transfer."""
        token_id = _mint(issuer, minter).token_id
        issuer.set_transfers_enabled(ADMIN, True)
        issuer.transfer_from(WALLET, WALLET, OUTSIDER, token_id)
        assert issuer.owner_of(token_id) == OUTSIDER

    def test_approved_operator_transfers(self, issuer, minter):
        """An approved account may move the token."""
        token_id = _mint(issuer, minter).token_id
        issuer.set_transfers_enabled(ADMIN, True)
        issuer.approve(WALLET, OUTSIDER, token_id)
        issuer.transfer_from(OUTSIDER, WALLET, OUTSIDER, token_id)
        assert issuer.owner_of(token_id) == OUTSIDER

    def test_stranger_cannot_transfer(self, issuer, minter):
        """Transfer mode does not bypass ownership."""
        token_id = _mint(issuer, minter).token_id
        issuer.set_transfers_enabled(ADMIN, True)
        with pytest.raises(AuthorizationError):
            issuer.transfer_from(OUTSIDER, WALLET, OUTSIDER, token_id)

    def test_switch_back_applies_to_later_calls(self, issuer, minter):
        """Disabling transfers again re-locks tokens."""
        token_id = _mint(issuer, minter).token_id
        issuer.set_transfers_enabled(ADMIN, True)
        issuer.set_transfers_enabled(ADMIN, False)
        with pytest.raises(TransfersDisabled):
            issuer.transfer_from(WALLET, WALLET, OUTSIDER, token_id)
