#!/usr/bin/env python3
"""
Command-line client: upload a video, start a variation job, poll it and
download every variation.
"""

import os
import sys
import json
import time
import argparse
import mimetypes

import requests

DEFAULT_BASE_URL = os.getenv("VARIATION_API_URL", "http://127.0.0.1:8000")


def upload_video(base_url: str, path: str, timeout: int = 300) -> dict:
    content_type = mimetypes.guess_type(path)[0] or "video/mp4"
    with open(path, "rb") as f:
        files = {"video": (os.path.basename(path), f, content_type)}
        response = requests.post(f"{base_url}/api/video/upload", files=files, timeout=timeout)
    response.raise_for_status()
    return response.json()


def start_processing(base_url: str, video_id: str, variation_count: int = 5, timeout: int = 30) -> dict:
    payload = {"video_id": video_id, "variation_count": variation_count}
    response = requests.post(f"{base_url}/api/video/process", json=payload, timeout=timeout)
    response.raise_for_status()
    return response.json()


def get_status(base_url: str, job_id: int, timeout: int = 30) -> dict:
    response = requests.get(f"{base_url}/api/video/status/{job_id}", timeout=timeout)
    response.raise_for_status()
    return response.json()


def wait_for_job(base_url: str, job_id: int, interval: float = 2.0, max_seconds: float = 20 * 60) -> dict:
    """Poll until the job leaves `active`. Raises TimeoutError past max_seconds."""
    deadline = time.time() + max_seconds
    while True:
        job = get_status(base_url, job_id)
        status = job.get("status")
        print(f"job={job_id} status={status} progress={job.get('progress')}")
        if status in ("completed", "failed", "not_found"):
            return job
        if time.time() >= deadline:
            raise TimeoutError(f"Job {job_id} still {status} after {max_seconds} seconds")
        time.sleep(interval)


def download_variation(base_url: str, download_url: str, out_dir: str, timeout: int = 300) -> str:
    url = download_url if download_url.startswith("http") else f"{base_url}{download_url}"
    out_path = os.path.join(out_dir, f"{url.rstrip('/').rsplit('/', 1)[-1]}.mp4")
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(out_path, "wb") as f:
            for chunk in response.iter_content(chunk_size=1024 * 1024):
                f.write(chunk)
    return out_path


def main() -> int:
    parser = argparse.ArgumentParser(description="Render variations of a video through the variation backend.")
    parser.add_argument("video", help="Path of the video to upload")
    parser.add_argument("--base", default=DEFAULT_BASE_URL)
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--out", default=".")
    parser.add_argument("--interval", type=float, default=2.0)
    parser.add_argument("--max-seconds", type=float, default=20 * 60)
    args = parser.parse_args()

    try:
        uploaded = upload_video(args.base, args.video)
        print(f"Uploaded {uploaded['video_id']} ({uploaded['size']})")
        submitted = start_processing(args.base, uploaded["video_id"], args.count)
        job = wait_for_job(args.base, submitted["job_id"], args.interval, args.max_seconds)
    except (requests.RequestException, TimeoutError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 3

    if job.get("status") != "completed":
        print(json.dumps(job, indent=2))
        return 2

    os.makedirs(args.out, exist_ok=True)
    for result in job.get("results", []):
        path = download_variation(args.base, result["download_url"], args.out)
        print(f"{result['name']}: similarity={result['similarity']} effects={','.join(result['effects'])} -> {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
