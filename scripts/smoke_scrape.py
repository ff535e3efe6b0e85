import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.absolute()))

import httpx

from app.providers.store.labels import fingerprint
from scrape import Target, scrape_target


def smoke(url: str) -> int:
    target = Target(job="smoke", url=url, labels={"job": "smoke", "instance": httpx.URL(url).netloc.decode()})
    with httpx.Client(follow_redirects=True) as client:
        res = scrape_target(target, client)

    if not res.up:
        print(f"DOWN {url}: {res.error}")
        return 1

    for s in res.samples:
        print(f"{fingerprint(s.labels)} {s.value!r} {s.ts:.3f}")
    print(f"OK {res.scraped} samples in {res.duration:.3f}s")
    return 0


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python scripts/smoke_scrape.py URL")
        sys.exit(2)
    sys.exit(smoke(sys.argv[1]))
