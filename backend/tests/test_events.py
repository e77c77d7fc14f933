import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from chainfakes import CREATOR, CURVE, TOKEN, TX, pair_log, transfer_log
from launchpad.chain.events import PairEventDecoder, ResolvedPair, hex_to_int
from launchpad.config import PAIR_CREATED_TOPIC


class TestPairEventDecoder(unittest.TestCase):
    def setUp(self):
        self.decoder = PairEventDecoder(PAIR_CREATED_TOPIC)

    def test_topic_is_keccak_of_signature(self):
        self.assertTrue(PAIR_CREATED_TOPIC.startswith("0x"))
        self.assertEqual(len(PAIR_CREATED_TOPIC), 66)

    def test_decode_valid_log(self):
        event = self.decoder.decode(pair_log())
        self.assertIsNotNone(event)
        self.assertEqual(event.token_address, TOKEN)
        self.assertEqual(event.curve_address, CURVE)
        self.assertEqual(event.creator, CREATOR)
        self.assertEqual(event.name, "Doge Two")
        self.assertEqual(event.symbol, "DOGE2")
        self.assertEqual(event.seed_base, 10**18)
        self.assertEqual(event.seed_tokens, 10**24)
        self.assertEqual(event.tx_hash, TX)
        self.assertEqual(event.block_number, 16)

    def test_unrelated_log_is_skipped(self):
        self.assertIsNone(self.decoder.decode(transfer_log()))

    def test_malformed_logs_do_not_raise(self):
        bad_data = pair_log()
        bad_data["data"] = "0xdeadbeef"
        short_topic = pair_log()
        short_topic["topics"][1] = "0x1234"
        for log in (None, "log", {}, {"topics": None}, bad_data, short_topic):
            self.assertIsNone(self.decoder.decode(log))

    def test_first_match_skips_unrelated_and_malformed(self):
        malformed = pair_log(token="0x" + "99" * 20)
        malformed["data"] = "0x00"
        logs = [transfer_log(), malformed, pair_log()]
        self.assertEqual(self.decoder.first_match(logs), ResolvedPair(TOKEN, CURVE))

    def test_first_match_respects_order(self):
        other = "0x" + "44" * 20
        logs = [pair_log(token=other), pair_log()]
        self.assertEqual(self.decoder.first_match(logs).token_address, other)

    def test_first_match_by_creator(self):
        other = "0x" + "44" * 20
        logs = [pair_log(token=other, creator="0x" + "77" * 20), pair_log()]
        self.assertEqual(self.decoder.first_match(logs, creator=CREATOR).token_address, TOKEN)
        self.assertIsNone(self.decoder.first_match(logs, creator="0x" + "88" * 20))

    def test_first_match_empty(self):
        self.assertIsNone(self.decoder.first_match([]))
        self.assertIsNone(self.decoder.first_match(None))

    def test_topic_comparison_is_case_insensitive(self):
        log = pair_log()
        log["topics"][0] = log["topics"][0].upper().replace("0X", "0x")
        self.assertIsNotNone(self.decoder.decode(log))

    def test_hex_to_int(self):
        self.assertEqual(hex_to_int("0x10"), 16)
        self.assertEqual(hex_to_int(7), 7)
        self.assertEqual(hex_to_int("12"), 12)
        self.assertIsNone(hex_to_int("0xzz"))
        self.assertIsNone(hex_to_int(None))


if __name__ == "__main__":
    unittest.main()
