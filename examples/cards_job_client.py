import asyncio
import json
import os
import sys

import httpx

BASE_URL = os.getenv("CARD_PIPELINE_URL", "http://localhost:8080")
TOKEN = os.getenv("CARD_PIPELINE_TOKEN", "dev-token")


async def main(path: str) -> None:
    """Queue a text file (pages separated by form feeds) and poll until the cards are ready."""
    with open(path, encoding="utf-8") as handle:
        pages = [{"pageNumber": idx, "text": text} for idx, text in enumerate(handle.read().split("\f"), start=1)]

    headers = {"Authorization": f"Bearer {TOKEN}"}
    async with httpx.AsyncClient(base_url=BASE_URL, headers=headers, timeout=30) as client:
        resp = await client.post("/cards/from-pages", json={"pages": pages, "sourceRef": os.path.basename(path)})
        resp.raise_for_status()
        job_id = resp.json()["jobId"]
        print(f"Queued job_id={job_id} pages={len(pages)}")

        while True:
            status = (await client.get(f"/jobs/{job_id}")).json()
            print(json.dumps(status.get("progress", {})))
            if status.get("state") in {"SUCCESS", "FAILURE"}:
                print(json.dumps(status.get("result") or status.get("error"), indent=2, ensure_ascii=False))
                break
            await asyncio.sleep(2)


if __name__ == "__main__":
    if len(sys.argv) != 2:
        sys.exit("usage: python examples/cards_job_client.py <document.txt>")
    asyncio.run(main(sys.argv[1]))
