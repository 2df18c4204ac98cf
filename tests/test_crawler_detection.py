import pytest

import sharecraft


@pytest.mark.parametrize(
    "user_agent",
    [
        "Twitterbot/1.0",
        "twitterbot/1.0",
        "Mozilla/5.0 (compatible; TWITTERBOT/1.0)",
        "facebookexternalhit/1.1 (+http://www.facebook.com/externalhit_uatext.php)",
        "LinkedInBot/1.0 (compatible; Mozilla/5.0; Apache-HttpClient +http://www.linkedin.com)",
        "WhatsApp/2.23.20.0",
        "Slackbot-LinkExpanding 1.0 (+https://api.slack.com/robots)",
        "TelegramBot (like TwitterBot)",
        "Mozilla/5.0 (compatible; Discordbot/2.0; +https://discordapp.com)",
        "Pinterest/0.2 (+https://www.pinterest.com/bot.html)",
        "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
    ],
)
def test_known_crawlers_detected(user_agent):
    assert sharecraft.is_social_crawler(user_agent) is True


@pytest.mark.parametrize(
    "user_agent",
    [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36",
        "Mozilla/5.0",
        "curl/8.4.0",
        "",
        None,
    ],
)
def test_browsers_and_empty_agents_not_detected(user_agent):
    assert sharecraft.is_social_crawler(user_agent) is False
