import logging

from . import helpers

# Placeholders of shell command templates in [commands]
_substitutions = {
    'host': '%h',
    'database': '%d',
}


class CommandManager:
    """
    Runs operator supplied shell commands, e.g. the pgbouncer.ini rewrite
    """

    def __init__(self, commands: dict[str, str]):
        self._commands = commands

    def _prepare_command(self, command_name: str, **kwargs):
        command: str = self._commands.get(command_name) or ''
        for arg_name, arg_value in kwargs.items():
            command = command.replace(_substitutions[arg_name], str(arg_value))
        return command

    def _exec_command(self, command_name: str, **kwargs):
        command = self._prepare_command(command_name, **kwargs)
        if not command:
            logging.error('Command %s is not configured.', command_name)
            return -1
        logging.info('Running %s command.', command_name)
        return helpers.subprocess_call(command, fail_comment=f'{command_name} command failed')

    def swap_upstream(self, host, database='*'):
        return self._exec_command('swap_upstream', host=host, database=database)
