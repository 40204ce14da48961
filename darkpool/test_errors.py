"""Program error decoding."""

from darkpool.errors import (
    ChainErrorCode, ChainExecutionError, decode_chain_error, parse_chain_error,
)


class TestChainErrorCode:

    def test_codes_are_contiguous(self):
        """6000..6028, no gaps."""
        values = sorted(int(c) for c in ChainErrorCode)
        assert values == list(range(6000, 6029))

    def test_every_code_has_a_message(self):
        for code in ChainErrorCode:
            assert code.message

    def test_anchor_names(self):
        assert ChainErrorCode.NO_COVERAGE.anchor_name == "NoCoverage"
        assert ChainErrorCode.from_anchor_name("MinFillNotMet") == ChainErrorCode.MIN_FILL_NOT_MET
        assert ChainErrorCode.from_anchor_name("Nope") is None


class TestDecode:

    def test_structured_error_wins(self):
        """InstructionError Custom code beats anything in the logs."""
        err = {"InstructionError": [2, {"Custom": 6004}]}
        logs = ["Program log: AnchorError occurred. Error Code: NoCoverage. Error Number: 6008."]
        assert decode_chain_error(logs, err) == ChainErrorCode.MARKET_CLOSED

    def test_anchor_error_number(self):
        logs = ["Program log: AnchorError occurred. Error Code: StaleQuote. "
                "Error Number: 6018. Error Message: quote too stale."]
        assert decode_chain_error(logs) == ChainErrorCode.STALE_QUOTE

    def test_anchor_error_name(self):
        logs = ["Program log: Error Code: CostExceedsLimit"]
        assert decode_chain_error(logs) == ChainErrorCode.COST_EXCEEDS_LIMIT

    def test_runtime_hex(self):
        """0x1770 = 6000."""
        logs = ["Program X failed: custom program error: 0x1770"]
        assert decode_chain_error(logs) == ChainErrorCode.WRONG_OWNER

    def test_message_fallback(self):
        logs = ["Program log: Insufficient vault balance for payout"]
        assert decode_chain_error(logs) == ChainErrorCode.INSUFFICIENT_BALANCE

    def test_unknown(self):
        assert decode_chain_error(["Program log: something else"], "BlockhashNotFound") is None

    def test_foreign_custom_code_falls_through(self):
        """A system-program custom error is not one of ours."""
        err = {"InstructionError": [0, {"Custom": 1}]}
        assert decode_chain_error([], err) is None


class TestParse:

    def test_keeps_logs_and_signature(self):
        logs = ["Program log: Error Number: 6020."]
        e = parse_chain_error(logs, None, tx_signature="5ig")
        assert isinstance(e, ChainExecutionError)
        assert e.code == ChainErrorCode.MIN_FILL_NOT_MET
        assert e.reason == "MinFillNotMet"
        assert e.logs == logs
        assert e.tx_signature == "5ig"

    def test_unknown_has_generic_reason(self):
        e = parse_chain_error([], "AccountInUse")
        assert e.code is None
        assert e.reason == "ChainError"
        assert "AccountInUse" in str(e)
