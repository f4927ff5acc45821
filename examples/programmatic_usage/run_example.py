"""
Programmatic usage example: measure the simple service while requests hit it

The harness stages the service, starts it, waits for "Server started", sends
a few requests from this process and then stops the service with SIGINT so it
writes its coverage data. An lcov report plus HTML ends up in ./coverage.
"""
import asyncio
import os
import signal
from urllib.request import urlopen

from coverage_harness import CoverageHarness, HarnessConfig

SERVICE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'simple_service')


async def exercise(port):
    loop = asyncio.get_running_loop()
    for query in ('', '?name=harness', '?name=harness&uppercase=1'):
        url = f"http://127.0.0.1:{port}/{query}"
        body = await loop.run_in_executor(None, lambda: urlopen(url, timeout=5).read())
        print(url, '->', body.decode('utf-8'))


async def main():
    config = HarnessConfig.from_environment()
    harness = CoverageHarness(config)

    harness.stage(SERVICE_DIR)
    harness.instrument_project()
    harness.inject_capture()

    handle = await harness.run(r'Server started on port \d+')
    try:
        await handle.wait_ready(timeout=30)
        await exercise(os.environ.get('PORT', '8080'))
        handle.send_signal(signal.SIGINT)
        await harness.gather_coverage()
    finally:
        await handle.close()

    descriptor = harness.make_report({'html_lcov': True})
    print(f"Report written to {descriptor.destination} ({harness.coverage_percentage:.1f}%)")


if __name__ == '__main__':
    asyncio.run(main())
