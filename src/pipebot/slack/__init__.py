from pipebot.slack.sink import SlackMessageSink

__all__ = ["SlackMessageSink"]
