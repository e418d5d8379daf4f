"""Social platform and messaging capabilities."""

import httpx
import structlog

from capabilities.base import CapabilityDescriptor, InvocationConvention, optional, param

logger = structlog.get_logger(__name__)

TWITTER_API = "https://api.twitter.com/2"
TELEGRAM_API = "https://api.telegram.org"
SLACK_API = "https://slack.com/api/chat.postMessage"
REQUEST_TIMEOUT = 30.0

# X/Twitter v2 write and read budgets
TWITTER_POST_LIMIT = (50, 900.0)
TWITTER_READ_LIMIT = (60, 900.0)


async def _post_json(url: str, payload: dict, headers: dict | None = None) -> httpx.Response:
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        response = await client.post(url, json=payload, headers=headers or {})
    response.raise_for_status()
    return response


# ─── X / Twitter ─────────────────────────────────────────────────


async def post_tweet(options: dict) -> dict:
    """Post a tweet; ``replyTo`` makes it a reply. Returns ``{"id", "text"}``."""
    payload: dict = {"text": options["text"]}
    if options.get("replyTo"):
        payload["reply"] = {"in_reply_to_tweet_id": str(options["replyTo"])}

    response = await _post_json(
        f"{TWITTER_API}/tweets",
        payload,
        headers={"Authorization": f"Bearer {options['accessToken']}"},
    )
    data = response.json().get("data", {})
    logger.info("tweet_posted", tweet_id=data.get("id"))
    return {"id": data.get("id"), "text": data.get("text")}


async def search_tweets(options: dict) -> list:
    """Recent search. Returns a list of ``{"id", "text", "authorId", "createdAt"}``."""
    max_results = max(10, min(int(options.get("maxResults") or 10), 100))
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        response = await client.get(
            f"{TWITTER_API}/tweets/search/recent",
            params={
                "query": options["query"],
                "max_results": max_results,
                "tweet.fields": "author_id,created_at",
            },
            headers={"Authorization": f"Bearer {options['accessToken']}"},
        )
    response.raise_for_status()
    return [
        {
            "id": tweet.get("id"),
            "text": tweet.get("text"),
            "authorId": tweet.get("author_id"),
            "createdAt": tweet.get("created_at"),
        }
        for tweet in response.json().get("data", [])
    ]


# ─── Messaging ───────────────────────────────────────────────────


async def slack_post_message(params: dict) -> dict:
    """Post via an incoming webhook URL, or via chat.postMessage with a bot token."""
    if params.get("webhookUrl"):
        await _post_json(params["webhookUrl"], {"text": params["text"]})
        return {"ok": True}

    if not params.get("token") or not params.get("channel"):
        raise ValueError("Slack needs either webhookUrl or token + channel")
    response = await _post_json(
        SLACK_API,
        {"channel": params["channel"], "text": params["text"]},
        headers={"Authorization": f"Bearer {params['token']}"},
    )
    body = response.json()
    if not body.get("ok"):
        raise RuntimeError(f"Slack error: {body.get('error')}")
    return {"ok": True, "ts": body.get("ts"), "channel": body.get("channel")}


async def discord_send_message(params: dict) -> dict:
    await _post_json(params["webhookUrl"], {"content": params["content"]})
    return {"ok": True}


async def telegram_send_message(params: dict) -> dict:
    response = await _post_json(
        f"{TELEGRAM_API}/bot{params['botToken']}/sendMessage",
        {"chat_id": params["chatId"], "text": params["text"]},
    )
    result = response.json().get("result", {})
    return {"ok": True, "messageId": result.get("message_id")}


SOCIAL_CAPABILITIES = [
    CapabilityDescriptor(
        path="social.twitter.postTweet",
        handler=post_tweet,
        convention=InvocationConvention.OPTIONS,
        parameters=[param("text"), param("accessToken"), optional("replyTo")],
        param_aliases={"content": "text", "inReplyTo": "replyTo"},
        path_aliases=["social.twitter.tweet", "social.twitter.createTweet"],
        external=True,
        rate_limit=TWITTER_POST_LIMIT,
        description="Publish a tweet or reply",
    ),
    CapabilityDescriptor(
        path="social.twitter.searchTweets",
        handler=search_tweets,
        convention=InvocationConvention.OPTIONS,
        parameters=[param("query"), param("accessToken"), optional("maxResults", 10)],
        param_aliases={"limit": "maxResults"},
        external=True,
        rate_limit=TWITTER_READ_LIMIT,
        description="Search recent tweets",
    ),
    CapabilityDescriptor(
        path="communication.slack.postMessage",
        handler=slack_post_message,
        convention=InvocationConvention.PARAMS,
        parameters=[
            param("text"),
            optional("webhookUrl"),
            optional("token"),
            optional("channel"),
        ],
        param_aliases={"message": "text"},
        path_aliases=["communication.slack.sendMessage"],
        external=True,
        description="Send a Slack message",
    ),
    CapabilityDescriptor(
        path="communication.discord.sendMessage",
        handler=discord_send_message,
        convention=InvocationConvention.PARAMS,
        parameters=[param("webhookUrl"), param("content")],
        param_aliases={"text": "content", "message": "content"},
        external=True,
        description="Send a Discord webhook message",
    ),
    CapabilityDescriptor(
        path="communication.telegram.sendMessage",
        handler=telegram_send_message,
        convention=InvocationConvention.PARAMS,
        parameters=[param("botToken"), param("chatId"), param("text")],
        param_aliases={"message": "text", "chat_id": "chatId"},
        external=True,
        description="Send a Telegram bot message",
    ),
]
