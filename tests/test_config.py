# tests/test_config.py
"""
Unit tests for gateway configuration.
"""
import pytest
from decimal import Decimal

from paygate.core.config import GateConfig, Settings, is_valid_address

from factories import CHAIN_ID, RECIPIENT


def make_settings(**overrides) -> Settings:
    values = dict(
        X402_PAY_TO_ADDRESS=RECIPIENT,
        X402_MIN_PAYMENT=Decimal("0.0001"),
        X402_CHAIN_ID=CHAIN_ID,
        X402_NETWORK="Base Sepolia",
        X402_MIN_CONFIRMATIONS=2,
    )
    values.update(overrides)
    return Settings(**values)


class TestIsValidAddress:
    """Test account address validation."""

    def test_checksummed(self):
        assert is_valid_address(RECIPIENT) is True

    def test_lowercase(self):
        assert is_valid_address(RECIPIENT.lower()) is True

    @pytest.mark.parametrize("address", [None, "", "0x1234", RECIPIENT[2:], RECIPIENT + "00", RECIPIENT + "\n", "0x" + "z" * 40])
    def test_invalid(self, address):
        assert is_valid_address(address) is False


class TestGateConfig:
    """Test the immutable payment terms."""

    def test_from_settings(self):
        config = GateConfig.from_settings(make_settings())

        assert config.recipient_address == RECIPIENT
        assert config.required_amount == 10 ** 14
        assert config.chain_id == CHAIN_ID
        assert config.network == "Base Sepolia"
        assert config.min_confirmations == 2
        assert config.asset == "ETH"
        assert config.payment_header == "X-Payment-Hash"

    def test_missing_pay_to_address(self):
        with pytest.raises(ValueError, match="X402_PAY_TO_ADDRESS"):
            GateConfig.from_settings(make_settings(X402_PAY_TO_ADDRESS=None))

    def test_malformed_pay_to_address(self):
        with pytest.raises(ValueError, match="Invalid recipient"):
            GateConfig.from_settings(make_settings(X402_PAY_TO_ADDRESS="0xnotanaddress"))

    def test_too_precise_minimum_payment(self):
        with pytest.raises(ValueError):
            GateConfig.from_settings(make_settings(X402_MIN_PAYMENT=Decimal("0.0000000000000000001")))

    def test_negative_confirmations(self):
        with pytest.raises(ValueError, match="min_confirmations"):
            GateConfig(recipient_address=RECIPIENT, required_amount=1, chain_id=CHAIN_ID,
                       network="Base Sepolia", min_confirmations=-1)

    def test_negative_amount(self):
        with pytest.raises(ValueError, match="required_amount"):
            GateConfig(recipient_address=RECIPIENT, required_amount=-1, chain_id=CHAIN_ID, network="Base Sepolia")

    def test_frozen(self, gate_config):
        """Payment terms cannot change once built."""
        with pytest.raises(AttributeError):
            gate_config.required_amount = 0
