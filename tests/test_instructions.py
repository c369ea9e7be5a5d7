import struct
import unittest

from solders.pubkey import Pubkey

from envelopekit.accounts import derive_addresses, derive_token_account
from envelopekit.constants import DEFAULT_PROGRAM_ID, MINT_DEVNET, SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID
from envelopekit.errors import DecodeError, ValidationError
from envelopekit.instructions import (
    CreateParams,
    DirectFixed,
    GroupFixed,
    GroupRandom,
    InstructionCodec,
    make_variant,
    variant_name,
)
from envelopekit.schema import get_schema
from envelopekit.tables import build_tables, discriminator

PROGRAM = Pubkey.from_string(DEFAULT_PROGRAM_ID)
MINT = Pubkey.from_string(MINT_DEVNET)
OWNER = Pubkey.new_unique()
CLAIMER = Pubkey.new_unique()


class DiscriminatorTests(unittest.TestCase):
    def test_create_discriminator_golden(self) -> None:
        self.assertEqual(discriminator("global", "create"), bytes([24, 30, 200, 40, 5, 28, 7, 119]))

    def test_tables_are_stable_and_read_only(self) -> None:
        first = build_tables()
        second = build_tables()
        self.assertEqual(first.instructions["claim"], second.instructions["claim"])
        self.assertEqual(first.instruction("create"), bytes([24, 30, 200, 40, 5, 28, 7, 119]))
        with self.assertRaises(TypeError):
            first.instructions["create"] = b"\x00" * 8  # type: ignore[index]

    def test_account_discriminators(self) -> None:
        tables = build_tables()
        self.assertEqual(tables.accounts["EnvelopeAccount"], discriminator("account", "EnvelopeAccount"))
        self.assertEqual(set(tables.accounts), {"UserState", "EnvelopeAccount", "ClaimRecord"})

    def test_operation_lookup(self) -> None:
        tables = build_tables()
        self.assertEqual(tables.operation_for(tables.instruction("refund")), "refund")
        self.assertIsNone(tables.operation_for(b"\xff" * 8))
        with self.assertRaises(ValidationError):
            tables.instruction("withdraw")


class CodecTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tables = build_tables()
        self.codec = InstructionCodec(self.tables, PROGRAM, MINT)

    def test_encode_group_fixed_create_golden(self) -> None:
        params = CreateParams(GroupFixed(), 1_000_000, 2, 86_400)
        data = self.codec.encode("create", params)
        expected = bytes.fromhex(
            "181ec828051c0777"
            "01"
            "40420f0000000000"
            "0200000000000000"
            "8051010000000000"
        )
        self.assertEqual(data, expected)

    def test_encode_direct_fixed_carries_allowed_claimer(self) -> None:
        params = CreateParams(DirectFixed(CLAIMER), 50_000, 1, 3_600)
        data = self.codec.encode("create", params)
        self.assertEqual(len(data), 8 + 1 + 32 + 24)
        self.assertEqual(data[8], 0)
        self.assertEqual(data[9:41], bytes(CLAIMER))
        self.assertEqual(struct.unpack_from("<QQQ", data, 41), (50_000, 1, 3_600))

    def test_non_create_operations_are_discriminator_only(self) -> None:
        for operation in ("init_user_state", "claim", "refund", "cancel", "close"):
            self.assertEqual(self.codec.encode(operation), self.tables.instruction(operation))

    def test_payload_for_non_create_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.codec.encode("claim", CreateParams(GroupFixed(), 1, 1, 1))

    def test_direct_fixed_requires_single_slot(self) -> None:
        with self.assertRaisesRegex(ValidationError, "exactly one"):
            self.codec.encode("create", CreateParams(DirectFixed(CLAIMER), 100_000, 2, 60))

    def test_zero_values_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            CreateParams(GroupRandom(), 0, 2, 60).validate()
        with self.assertRaises(ValidationError):
            CreateParams(GroupRandom(), 10, 0, 60).validate()
        with self.assertRaises(ValidationError):
            CreateParams(GroupRandom(), 10, 2, 0).validate()

    def test_decode_round_trip_each_variant(self) -> None:
        for variant, slots in ((DirectFixed(CLAIMER), 1), (GroupFixed(), 3), (GroupRandom(), 5)):
            params = CreateParams(variant, 2_000_000, slots, 48)
            decoded = self.codec.decode(self.codec.encode("create", params))
            self.assertEqual(decoded.operation, "create")
            self.assertEqual(decoded.params, params)

    def test_decode_rejects_trailing_bytes(self) -> None:
        data = self.codec.encode("create", CreateParams(GroupFixed(), 1_000_000, 2, 60))
        with self.assertRaises(DecodeError):
            self.codec.decode(data + b"\x00")
        with self.assertRaises(DecodeError):
            self.codec.decode(self.codec.encode("claim") + b"\x01")

    def test_decode_rejects_unknown_tag_and_discriminator(self) -> None:
        data = bytearray(self.codec.encode("create", CreateParams(GroupFixed(), 1_000_000, 2, 60)))
        data[8] = 9
        with self.assertRaisesRegex(DecodeError, "unknown envelope type"):
            self.codec.decode(bytes(data))
        with self.assertRaises(DecodeError):
            self.codec.decode(b"\x00" * 8)
        with self.assertRaises(DecodeError):
            self.codec.decode(b"\x01\x02")

    def test_claim_instruction_account_order(self) -> None:
        ix = self.codec.claim(OWNER, CLAIMER, 3)
        addresses = derive_addresses(PROGRAM, OWNER, 3, CLAIMER)
        self.assertEqual(ix.program_id, PROGRAM)
        self.assertEqual(bytes(ix.data), self.tables.instruction("claim"))
        keys = [meta.pubkey for meta in ix.accounts]
        self.assertEqual(
            keys,
            [
                addresses.envelope.address,
                addresses.vault.address,
                derive_token_account(CLAIMER, MINT),
                addresses.claim_record.address,
                CLAIMER,
                Pubkey.from_string(TOKEN_PROGRAM_ID),
                Pubkey.from_string(SYSTEM_PROGRAM_ID),
            ],
        )
        claimer_meta = ix.accounts[4]
        self.assertTrue(claimer_meta.is_signer)
        self.assertTrue(claimer_meta.is_writable)
        self.assertFalse(ix.accounts[5].is_writable)

    def test_create_instruction_uses_predicted_id(self) -> None:
        params = CreateParams(GroupRandom(), 1_000_000, 4, 60)
        ix = self.codec.create(OWNER, 9, params)
        addresses = derive_addresses(PROGRAM, OWNER, 9)
        self.assertEqual(len(ix.accounts), get_schema("create").arity)
        self.assertEqual(ix.accounts[0].pubkey, addresses.user_state.address)
        self.assertEqual(ix.accounts[1].pubkey, addresses.envelope.address)
        self.assertEqual(ix.accounts[2].pubkey, addresses.vault.address)
        self.assertEqual(ix.accounts[4].pubkey, MINT)
        self.assertEqual(ix.accounts[5].pubkey, OWNER)

    def test_close_and_cancel_account_lists(self) -> None:
        close = self.codec.close(OWNER, 2)
        self.assertEqual([m.pubkey for m in close.accounts], [derive_addresses(PROGRAM, OWNER, 2).envelope.address, OWNER])
        cancel = self.codec.cancel(OWNER, 2)
        self.assertEqual(len(cancel.accounts), 3)
        self.assertTrue(cancel.accounts[2].is_signer)


class SchemaTests(unittest.TestCase):
    def test_claim_role_order(self) -> None:
        self.assertEqual(
            get_schema("claim").role_names(),
            [
                "envelope",
                "vault",
                "claimer_token_account",
                "claim_record",
                "claimer",
                "token_program",
                "system_program",
            ],
        )

    def test_missing_role_rejected(self) -> None:
        with self.assertRaisesRegex(ValidationError, "missing account 'owner'"):
            get_schema("close").metas({"envelope": OWNER})

    def test_extra_role_rejected(self) -> None:
        with self.assertRaisesRegex(ValidationError, "unexpected accounts"):
            get_schema("close").metas({"envelope": OWNER, "owner": CLAIMER, "vault": OWNER})

    def test_fixed_program_role_must_match(self) -> None:
        accounts = {"user_state": OWNER, "user": CLAIMER, "system_program": OWNER}
        with self.assertRaises(ValidationError):
            get_schema("init_user_state").metas(accounts)

    def test_unknown_schema_version(self) -> None:
        with self.assertRaises(ValidationError):
            get_schema("create", "token-v0")


class VariantTests(unittest.TestCase):
    def test_make_variant_aliases(self) -> None:
        self.assertEqual(make_variant("group_fixed"), GroupFixed())
        self.assertEqual(make_variant("GroupRandom"), GroupRandom())
        self.assertEqual(make_variant("direct_fixed", str(CLAIMER)), DirectFixed(CLAIMER))
        self.assertEqual(variant_name(GroupRandom()), "GroupRandom")

    def test_make_variant_checks_allowed(self) -> None:
        with self.assertRaises(ValidationError):
            make_variant("direct_fixed")
        with self.assertRaises(ValidationError):
            make_variant("group_fixed", str(CLAIMER))
        with self.assertRaises(ValidationError):
            make_variant("lottery")


if __name__ == "__main__":
    unittest.main()
