import math
import asteval

# Internal units are mm for length and rad for angle, as in Geant4
UNIT_SYMBOLS = {
    'um': 0.001, 'mm': 1.0, 'cm': 10.0, 'm': 1000.0, 'inch': 25.4,
    'rad': 1.0, 'deg': math.pi / 180.0, 'degree': math.pi / 180.0
}

def create_configured_asteval():
    """
    Factory function to create and configure a new asteval.Interpreter instance.
    Only arithmetic, a few math functions and unit symbols are exposed.
    """
    aeval = asteval.Interpreter(symtable={}, minimal=True, no_if=True, no_for=True, no_while=True, no_try=True)

    # Add safe math functions
    for func_name in ['sin', 'cos', 'tan', 'asin', 'acos', 'atan', 'atan2',
                      'sqrt', 'exp', 'log', 'log10', 'pow', 'abs']:
        if hasattr(math, func_name):
            aeval.symtable[func_name] = getattr(math, func_name)

    aeval.symtable.update({'pi': math.pi, 'PI': math.pi})
    aeval.symtable.update(UNIT_SYMBOLS)

    return aeval

class ExpressionEvaluator:
    """A small, safe evaluator for numeric fields written with units ("5*cm")."""

    def __init__(self):
        self.interpreter = create_configured_asteval()

    def evaluate(self, expression, symbols=None):
        """
        Evaluates an expression string, optionally with extra named values.

        Returns:
            tuple: (True, value) on success, (False, error_message) on failure.
        """
        saved_symbols = {}
        if symbols:
            for name, value in symbols.items():
                if name in self.interpreter.symtable:
                    saved_symbols[name] = self.interpreter.symtable[name]
                self.interpreter.symtable[name] = value

        try:
            result = self.interpreter.eval(expression, show_errors=False, raise_errors=True)
            return True, result
        except Exception as e:
            # asteval exceptions are descriptive and safe to show the user.
            return False, str(e)
        finally:
            # Don't let symbols from one call leak into the next
            if symbols:
                for name in symbols:
                    if name in saved_symbols:
                        self.interpreter.symtable[name] = saved_symbols[name]
                    elif name in self.interpreter.symtable:
                        del self.interpreter.symtable[name]

    def to_number(self, value, default=0.0):
        """
        Coerces a field value to float. Numbers pass through, strings are
        evaluated as expressions. Raises ValueError when that fails.
        """
        if value is None:
            return default
        if isinstance(value, bool):
            raise ValueError(f"Expected a number, got boolean {value!r}")
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            if not value.strip():
                return default
            success, result = self.evaluate(value)
            if not success:
                raise ValueError(f"Could not evaluate '{value}': {result}")
            if isinstance(result, bool) or not isinstance(result, (int, float)):
                raise ValueError(f"Expression '{value}' did not evaluate to a number")
            return float(result)
        raise ValueError(f"Expected a number or expression, got {type(value).__name__}")
