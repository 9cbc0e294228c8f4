"""
Operator tool: price quotes, payload inspection and sample configuration.
"""
import argparse
import json
import sys

from cryptography.hazmat.primitives import serialization

from crossify.bonding_curve import BondingCurveParams, CurveType, calculate_price
from crossify.codec import decode, message_id, to_dict
from crossify.config import Config, SyncConfig
from crossify.crypto import generate_key_pair, public_key_to_address, serialize_public_key
from crossify.errors import ValidationError


def quote(curve: str, base_price: int, slope: int, reserve_ratio: int, supply: int, amount: int) -> int:
    params = BondingCurveParams.create(CurveType[curve.upper()], base_price, slope, reserve_ratio)
    return calculate_price(supply, amount, params)


def describe_payload(payload_hex: str) -> dict:
    payload = bytes.fromhex(payload_hex)
    data = to_dict(decode(payload))
    data['id'] = message_id(payload).hex()
    return data


def generate_sample_config(output_path: str, chain_id: int, reorder_window: int, corridor_bps: int):
    """Writes a replica configuration with a freshly generated authority key."""
    private_key, public_key = generate_key_pair()
    public_pem = serialize_public_key(public_key)

    config = Config.default(SyncConfig(reorder_window=reorder_window, corridor_bps=corridor_bps))
    config.chain.chain_id = chain_id
    config.chain.authority_public_key = public_pem
    config.database.path = f"./crossify_data/chain_{chain_id}"
    config.to_file(output_path)

    address = public_key_to_address(public_pem).hex()
    print(f"\nGenerated sample configuration at: {output_path}")
    print("Please review reorder_window and corridor_bps; every replica of a token must agree on them.")
    print("\nAuthority key (DO NOT USE IN PRODUCTION):")
    print(f"  - Address {address}")
    print(private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode('utf-8'))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Cross-chain pricing operator tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    parser_quote = subparsers.add_parser("quote", help="Price an amount on a bonding curve")
    parser_quote.add_argument("--curve", choices=[c.name.lower() for c in CurveType], default="linear")
    parser_quote.add_argument("--base-price", type=int, required=True)
    parser_quote.add_argument("--slope", type=int, default=0)
    parser_quote.add_argument("--reserve-ratio", type=int, default=0, help="Parts per 1000")
    parser_quote.add_argument("--supply", type=int, required=True)
    parser_quote.add_argument("--amount", type=int, required=True)

    parser_decode = subparsers.add_parser("decode", help="Decode a hex-encoded cross-chain payload")
    parser_decode.add_argument("payload", type=str)

    parser_sample = subparsers.add_parser("sample-config", help="Generate a sample replica config")
    parser_sample.add_argument("--output", type=str, default="crossify.json", help="Output file path")
    parser_sample.add_argument("--chain-id", type=int, default=1)
    parser_sample.add_argument("--reorder-window", type=int, required=True)
    parser_sample.add_argument("--corridor-bps", type=int, required=True)

    args = parser.parse_args(argv)

    try:
        if args.command == "quote":
            print(quote(args.curve, args.base_price, args.slope, args.reserve_ratio, args.supply, args.amount))
        elif args.command == "decode":
            print(json.dumps(describe_payload(args.payload), indent=2))
        elif args.command == "sample-config":
            generate_sample_config(args.output, args.chain_id, args.reorder_window, args.corridor_bps)
    except ValidationError as e:
        print(f"Error ({e.kind}): {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
