import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from chainfakes import (
    CREATOR,
    CURVE,
    FACTORY,
    OTHER_TX,
    TOKEN,
    TX,
    FakeChainClient,
    address_topic,
    pair_log,
    transfer_log,
)
from launchpad.chain.events import PairEventDecoder, ResolvedPair
from launchpad.chain.resolver import (
    MINTER_SELECTOR,
    TOKEN_TO_CURVE_SELECTOR,
    AddressResolver,
    ResolveHint,
    is_tx_hash,
)
from launchpad.config import PAIR_CREATED_TOPIC


def _resolver(client, **kwargs) -> AddressResolver:
    kwargs.setdefault("factory_address", FACTORY)
    return AddressResolver(client, PairEventDecoder(PAIR_CREATED_TOPIC), **kwargs)


class TestAddressResolver(unittest.IsolatedAsyncioTestCase):
    async def test_receipt_logs_first(self):
        client = FakeChainClient(receipt={"blockNumber": "0x64", "logs": [transfer_log(), pair_log()]})
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX))
        self.assertEqual(resolution.status, "found")
        self.assertEqual(resolution.strategy, "receipt")
        self.assertEqual(resolution.pair, ResolvedPair(TOKEN, CURVE))
        self.assertEqual(client.names(), ["get_transaction_receipt"])

    async def test_receipt_logs_filtered_by_factory(self):
        foreign = pair_log(address="0x" + "ee" * 20)
        client = FakeChainClient(receipt={"blockNumber": "0x64", "logs": [foreign]})
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX))
        self.assertEqual(resolution.status, "not_found")
        self.assertEqual(client.names(), ["get_transaction_receipt", "get_logs"])

    async def test_window_search_after_empty_receipt(self):
        other = "0x" + "44" * 20
        client = FakeChainClient(
            receipt={"blockNumber": "0x64", "logs": []},
            window_logs=[pair_log(token=other, tx_hash=OTHER_TX), pair_log()],
        )
        resolution = await _resolver(client, window_blocks=25).resolve(ResolveHint(tx_hash=TX))
        self.assertEqual(resolution.strategy, "window")
        # the log from our own transaction wins over an earlier foreign one
        self.assertEqual(resolution.pair.token_address, TOKEN)
        _, kwargs = client.calls[1]
        self.assertEqual(kwargs["from_block"], 75)
        self.assertEqual(kwargs["to_block"], 125)
        self.assertEqual(kwargs["topics"], [PAIR_CREATED_TOPIC])
        self.assertTrue(kwargs["retry"])

    async def test_window_clamps_at_genesis(self):
        client = FakeChainClient(receipt={"blockNumber": "0x5", "logs": []})
        await _resolver(client).resolve(ResolveHint(tx_hash=TX))
        self.assertEqual(client.calls[1][1]["from_block"], 0)

    async def test_missing_receipt_is_not_found(self):
        client = FakeChainClient(receipt=None)
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX))
        self.assertEqual(resolution.status, "not_found")
        self.assertEqual(resolution.error, "receipt_missing")
        # no metadata scan when a tx hash was given
        self.assertNotIn("block_number", client.names())

    async def test_rpc_failure_is_error_not_not_found(self):
        client = FakeChainClient(fail={"get_transaction_receipt"})
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX))
        self.assertEqual(resolution.status, "error")
        self.assertIn("http_503", resolution.error)

    async def test_deadline_exceeded_is_error(self):
        client = FakeChainClient(receipt={"blockNumber": "0x1", "logs": []}, delay=0.2)
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX), deadline=0.05)
        self.assertEqual(resolution.status, "error")
        self.assertEqual(resolution.error, "deadline_exceeded")

    async def test_minter_probe_skips_log_search(self):
        client = FakeChainClient(minter=CURVE)
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX, token_address=TOKEN))
        self.assertEqual(resolution.strategy, "minter")
        self.assertEqual(resolution.pair, ResolvedPair(TOKEN, CURVE))
        self.assertEqual(client.names(), ["call"])
        self.assertEqual(client.calls[0][1]["data"], MINTER_SELECTOR)

    async def test_minter_revert_falls_through_to_receipt(self):
        client = FakeChainClient(minter=None, receipt={"blockNumber": "0x64", "logs": [pair_log()]})
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX, token_address=TOKEN))
        self.assertEqual(resolution.strategy, "receipt")
        self.assertEqual(client.names(), ["call", "get_transaction_receipt"])

    async def test_minter_zero_address_is_unset(self):
        client = FakeChainClient(minter="0x" + "00" * 20, factory_curve="0x" + "00" * 20)
        resolution = await _resolver(client).resolve(ResolveHint(token_address=TOKEN))
        self.assertEqual(resolution.status, "not_found")
        self.assertEqual(resolution.error, "token_unmatched")
        self.assertEqual(client.names(), ["call", "call", "block_number", "get_logs"])

    async def test_factory_mapping_after_unset_minter(self):
        client = FakeChainClient(minter=None, factory_curve=CURVE)
        resolution = await _resolver(client).resolve(ResolveHint(token_address=TOKEN))
        self.assertEqual(resolution.strategy, "factory_mapping")
        self.assertEqual(resolution.pair, ResolvedPair(TOKEN, CURVE))
        _, factory_call = client.calls[1]
        self.assertEqual(factory_call["to"], FACTORY)
        self.assertEqual(factory_call["data"], TOKEN_TO_CURVE_SELECTOR + "0" * 24 + TOKEN[2:])

    async def test_token_logs_after_factory_unset(self):
        other = "0x" + "44" * 20
        client = FakeChainClient(scan_logs=[pair_log(token=other, curve="0x" + "55" * 20), pair_log()], head=80_000)
        resolution = await _resolver(client, token_scan_blocks=50_000).resolve(ResolveHint(token_address=TOKEN))
        self.assertEqual(resolution.strategy, "token_logs")
        self.assertEqual(resolution.pair, ResolvedPair(TOKEN, CURVE))
        logs_call = client.calls[-1][1]
        self.assertEqual(logs_call["topics"], [PAIR_CREATED_TOPIC, address_topic(TOKEN)])
        self.assertEqual(logs_call["from_block"], 30_000)
        self.assertEqual(logs_call["address"], FACTORY)
        self.assertFalse(logs_call["retry"])

    async def test_token_strategies_follow_exhausted_tx_strategies(self):
        client = FakeChainClient(receipt=None, factory_curve=CURVE)
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX, token_address=TOKEN))
        self.assertEqual(resolution.strategy, "factory_mapping")
        self.assertEqual(client.names(), ["call", "get_transaction_receipt", "call"])

    async def test_no_factory_skips_mapping(self):
        client = FakeChainClient(window_logs=[pair_log()], factory_curve=CURVE)
        resolution = await _resolver(client, factory_address=None).resolve(ResolveHint(token_address=TOKEN))
        self.assertEqual(resolution.strategy, "token_logs")
        self.assertEqual(client.names(), ["call", "block_number", "get_logs"])

    async def test_creator_narrows_receipt_match(self):
        stranger = "0x" + "77" * 20
        theirs = pair_log(token="0x" + "44" * 20, creator=stranger)
        client = FakeChainClient(receipt={"blockNumber": "0x64", "logs": [theirs, pair_log()]})
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX, creator=CREATOR))
        self.assertEqual(resolution.strategy, "receipt")
        self.assertEqual(resolution.pair.token_address, TOKEN)

    async def test_creator_narrows_window_match(self):
        stranger = "0x" + "77" * 20
        client = FakeChainClient(
            receipt={"blockNumber": "0x64", "logs": []},
            window_logs=[pair_log(creator=stranger), pair_log(token="0x" + "44" * 20, tx_hash=OTHER_TX)],
        )
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX, creator=CREATOR))
        self.assertEqual(resolution.strategy, "window")
        self.assertEqual(resolution.pair.token_address, "0x" + "44" * 20)

    async def test_creator_without_match_is_not_found(self):
        client = FakeChainClient(receipt={"blockNumber": "0x64", "logs": [pair_log()]})
        resolution = await _resolver(client).resolve(ResolveHint(tx_hash=TX, creator="0x" + "77" * 20))
        self.assertEqual(resolution.status, "not_found")
        self.assertEqual(resolution.error, "event_missing")

    async def test_metadata_scan_newest_first_single_attempt(self):
        older = pair_log(curve="0x" + "55" * 20, symbol="DOGE2", tx_hash=OTHER_TX)
        newer = pair_log(symbol="doge2")
        client = FakeChainClient(scan_logs=[older, transfer_log(), newer], head=600_000)
        resolution = await _resolver(client, scan_blocks=500_000).resolve(ResolveHint(symbol="DOGE2"))
        self.assertEqual(resolution.strategy, "metadata")
        self.assertEqual(resolution.pair.curve_address, CURVE)
        self.assertEqual(client.names(), ["block_number", "get_logs"])
        self.assertFalse(client.calls[0][1]["retry"])
        logs_call = client.calls[1][1]
        self.assertFalse(logs_call["retry"])
        self.assertEqual(logs_call["from_block"], 100_000)
        self.assertEqual(logs_call["address"], FACTORY)

    async def test_metadata_scan_matches_name(self):
        client = FakeChainClient(scan_logs=[pair_log(name="Doge Two", symbol="XX")])
        resolution = await _resolver(client).resolve(ResolveHint(name="doge two"))
        self.assertEqual(resolution.status, "found")

    async def test_metadata_scan_unmatched(self):
        client = FakeChainClient(scan_logs=[pair_log(symbol="OTHER", name="Other")])
        resolution = await _resolver(client).resolve(ResolveHint(symbol="DOGE2"))
        self.assertEqual(resolution.status, "not_found")
        self.assertEqual(resolution.error, "metadata_unmatched")

    async def test_no_hint(self):
        client = FakeChainClient()
        resolution = await _resolver(client).resolve(ResolveHint())
        self.assertEqual(resolution.error, "no_hint")
        self.assertEqual(client.calls, [])

    def test_hint_from_record_ignores_placeholder_hash(self):
        class Row:
            tx_hash = "pending-1700000000000"
            token_address = ""
            symbol = "DOGE2"
            name = "Doge Two"

        hint = ResolveHint.from_record(Row())
        self.assertIsNone(hint.tx_hash)
        self.assertIsNone(hint.token_address)
        self.assertTrue(hint.actionable)
        self.assertFalse(is_tx_hash("pending-1"))
        self.assertTrue(is_tx_hash(TX))


if __name__ == "__main__":
    unittest.main()
