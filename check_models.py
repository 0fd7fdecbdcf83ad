#!/usr/bin/env python3
import os
import httpx

base_url = os.environ.get("PROXY_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
api_key = os.environ.get("PROXY_API_KEY", "")

headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
response = httpx.get(f"{base_url}/v1/models", headers=headers)

if response.status_code != 200:
    print(f"Failed to list models: {response.status_code} {response.text}")
    exit(1)

models = response.json().get("data", [])

print("=== Flash models ===")
for m in models:
    mid = m.get("id", "")
    if "flash" in mid:
        print(mid)

print("\n=== Other models ===")
for m in models:
    mid = m.get("id", "")
    if "flash" not in mid:
        print(mid)
