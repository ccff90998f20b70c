import uvicorn

from webproxy.vars import HOST, PORT


def main():
    uvicorn.run("webproxy.server:app", host=HOST, port=PORT, proxy_headers=True)


if __name__ == "__main__":
    main()
