"""
Example: Keep a TCP port mapping alive until interrupted.

Renews the mapping at half its granted lifetime and removes it on exit.
"""
import asyncio
import sys

from natpmp_client import NatPMPClient, Operation
from natpmp_client.log import configure_logging


async def main(gateway: str, port: int):
    """Map `port` on `gateway` and hold it."""
    configure_logging("INFO")

    client = await NatPMPClient.connect(gateway)
    async with client:
        address = await client.send_external_address_request()
        print(f"External address: {address.external_address}")

        try:
            while True:
                mapping = await client.request_mapping(port, port, Operation.MAP_TCP, lifetime=3600)
                if not mapping.success:
                    print(f"Gateway refused the mapping: result code {int(mapping.result_code)}")
                    return

                print(f"{address.external_address}:{mapping.external_port} -> local port {port} "
                      f"for {mapping.lifetime}s")

                if client.gateway_rebooted:
                    print("Gateway rebooted; mapping was recreated")

                await asyncio.sleep(max(mapping.lifetime // 2, 1))
        except asyncio.CancelledError:
            pass
        finally:
            await client.destroy_mapping(port, Operation.MAP_TCP)
            print("Mapping removed")


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print("usage: keep_mapping.py GATEWAY PORT")
        sys.exit(1)
    try:
        asyncio.run(main(sys.argv[1], int(sys.argv[2])))
    except KeyboardInterrupt:
        pass
